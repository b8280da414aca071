"""Completion side-effect contracts for tasks.

A task whose text asks for a pull request, a push or a CI update is only done
once the side effect can be observed. Exit code 0 from the worker is not enough.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

from taskpilot.models import CompletionVerification, Phase, ProbeResult, Task, utcnow_iso

_PR_PATTERN = re.compile(r"\bPRs?\b")
_PULL_REQUEST_PATTERN = re.compile(r"\bpull[ -]requests?\b", re.IGNORECASE)
_PUSH_PATTERN = re.compile(r"\bpush(?:es|ed|ing)?\b", re.IGNORECASE)
_CI_PATTERN = re.compile(r"\bCI\b")

CI_SIGNAL_STATUSES = {"AWAITING_CI", "CI_FAILED", "READY_FOR_REVIEW", "DONE"}

PROBE_PR_URL = "phase.prUrl is set"
PROBE_REMOTE_BRANCH = "phase branch exists on remote"
PROBE_CI_SIGNAL = "phase has a CI signal"


class CapabilityChecker(Protocol):
    def command_available(self, executable: str) -> bool: ...

    def github_authenticated(self) -> bool: ...

    def remote_branch_exists(self, branch_name: str, remote: str = "origin") -> bool: ...


@dataclass(slots=True)
class PreflightResult:
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def message(self) -> str:
        return "Capability preflight failed: " + "; ".join(self.failures)


def derive_contracts(task: Task) -> list[str]:
    text = f"{task.title}\n{task.description}"
    contracts: list[str] = []
    if _PR_PATTERN.search(text) or _PULL_REQUEST_PATTERN.search(text):
        contracts.append("PR_CREATION")
    if _PUSH_PATTERN.search(text):
        contracts.append("REMOTE_PUSH")
    if _CI_PATTERN.search(text):
        contracts.append("CI_TRIGGERED_UPDATE")
    return contracts


def run_preflight(contracts: list[str], checker: CapabilityChecker) -> PreflightResult:
    result = PreflightResult()
    if not contracts:
        return result
    if not checker.command_available("git"):
        result.failures.append("git CLI binary not found in PATH.")
    if "PR_CREATION" in contracts or "CI_TRIGGERED_UPDATE" in contracts:
        if not checker.command_available("gh"):
            result.failures.append("gh CLI binary not found in PATH.")
        elif not checker.github_authenticated():
            result.failures.append("gh CLI is not authenticated. Run 'gh auth login'.")
    return result


def _probe_pr_url(phase: Phase) -> ProbeResult:
    if phase.pr_url:
        return ProbeResult(PROBE_PR_URL, True, f"PR URL: {phase.pr_url}")
    return ProbeResult(PROBE_PR_URL, False, "Phase has no PR URL recorded.")


def _probe_remote_branch(phase: Phase, checker: CapabilityChecker) -> ProbeResult:
    if not phase.branch_name.strip():
        return ProbeResult(PROBE_REMOTE_BRANCH, False, "Phase has no branch name.")
    if checker.remote_branch_exists(phase.branch_name):
        return ProbeResult(
            PROBE_REMOTE_BRANCH, True, f"Branch '{phase.branch_name}' found on origin."
        )
    return ProbeResult(
        PROBE_REMOTE_BRANCH, False, f"Branch '{phase.branch_name}' not found on origin."
    )


def _probe_ci_signal(phase: Phase) -> ProbeResult:
    if phase.status in CI_SIGNAL_STATUSES:
        return ProbeResult(PROBE_CI_SIGNAL, True, f"Phase status is {phase.status}.")
    if phase.ci_status_context:
        return ProbeResult(PROBE_CI_SIGNAL, True, "Phase has CI status context.")
    return ProbeResult(
        PROBE_CI_SIGNAL, False, f"Phase status {phase.status} carries no CI signal."
    )


def verify_completion(
    contracts: list[str], phase: Phase, checker: CapabilityChecker
) -> CompletionVerification:
    probes: list[ProbeResult] = []
    for contract in contracts:
        if contract == "PR_CREATION":
            probes.append(_probe_pr_url(phase))
        elif contract == "REMOTE_PUSH":
            probes.append(_probe_remote_branch(phase, checker))
        elif contract == "CI_TRIGGERED_UPDATE":
            probes.append(_probe_ci_signal(phase))
    missing = [f"{probe.name}: {probe.details}" for probe in probes if not probe.success]
    return CompletionVerification(
        checked_at=utcnow_iso(),
        contracts=list(contracts),
        status="FAILED" if missing else "PASSED",
        probes=probes,
        missing_side_effects=missing,
    )
