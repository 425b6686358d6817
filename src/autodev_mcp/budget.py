"""Estimated token accounting with NORMAL/WARNING/CHECKPOINT usage bands.

The controller only classifies. Reacting to a band (summarizing, handing off)
is left to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import AutodevSettings
from .errors import InvalidInputError
from .storage import Phase, TokenUsage, WorkflowState
from .workflow import PhaseStateMachine, parse_phase

logger = logging.getLogger(__name__)

PHASE_ALLOTMENTS: dict[Phase, int] = {
    Phase.DETECT: 10_000,
    Phase.CLASSIFY: 5_000,
    Phase.PLAN: 30_000,
    Phase.EXECUTE: 100_000,
    Phase.INTEGRATE: 20_000,
    Phase.REVIEW: 15_000,
    Phase.RESEARCH: 80_000,
}
DEFAULT_PHASE_ALLOTMENT = 50_000

# (kind, size) -> tokens; size None applies to every size class.
_OPERATION_COSTS: dict[str, dict[str | None, int]] = {
    "read": {"small": 500, "medium": 2_000, "large": 5_000},
    "write": {"small": 300, "medium": 1_000, "large": 3_000},
    "edit": {"small": 200, "medium": 500, "large": 1_500},
    "shell": {"small": 200, "medium": 500, "large": 2_000},
    "grep": {None: 1_000},
    "glob": {None: 500},
    "task": {None: 5_000},
    "skill": {None: 3_000},
}
_KIND_ALIASES = {"bash": "shell"}
DEFAULT_OPERATION_COST = 500

RESPONSE_COSTS = {
    "planning": 3_000,
    "implementation": 2_000,
    "explanation": 1_500,
    "error": 500,
    "simple": 300,
}
DEFAULT_RESPONSE_COST = 1_000


class UsageBand(str, Enum):
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CHECKPOINT = "CHECKPOINT"


def classify(usage: TokenUsage) -> UsageBand:
    fraction = usage.fraction
    if fraction >= usage.checkpoint_threshold:
        return UsageBand.CHECKPOINT
    if fraction >= usage.warning_threshold:
        return UsageBand.WARNING
    return UsageBand.NORMAL


def estimate(kind: str, size: str = "medium") -> int:
    """Approximate token cost of one tool operation, consulted before running it."""

    key = (kind or "").strip().lower()
    key = _KIND_ALIASES.get(key, key)
    costs = _OPERATION_COSTS.get(key)
    if costs is None:
        return DEFAULT_OPERATION_COST
    if None in costs:
        return costs[None]
    return costs.get((size or "").strip().lower(), DEFAULT_OPERATION_COST)


def estimate_response(kind: str) -> int:
    return RESPONSE_COSTS.get((kind or "").strip().lower(), DEFAULT_RESPONSE_COST)


def phase_allotment(phase: Phase | str) -> int:
    return PHASE_ALLOTMENTS.get(parse_phase(phase), DEFAULT_PHASE_ALLOTMENT)


@dataclass(slots=True)
class UsageReport:
    band: UsageBand
    estimated: int
    budget: int
    fraction: float
    added: int = 0
    phase: Phase | None = None

    @property
    def percent(self) -> int:
        return int(self.fraction * 100)

    def message(self) -> str:
        if self.band is UsageBand.CHECKPOINT:
            return (
                f"TOKEN_CHECKPOINT: Usage at {self.percent}% ({self.estimated} / {self.budget} tokens)\n"
                "ACTION: Trigger handoff procedure"
            )
        if self.band is UsageBand.WARNING:
            return (
                f"TOKEN_WARNING: Usage at {self.percent}% ({self.estimated} / {self.budget} tokens)\n"
                "ACTION: Start context summarization"
            )
        return f"Token usage: {self.estimated} / {self.budget} ({self.percent}%)"

    def as_dict(self) -> dict[str, Any]:
        return {
            "band": self.band.value,
            "estimated": self.estimated,
            "budget": self.budget,
            "fraction": self.fraction,
            "added": self.added,
            "phase": self.phase.value if self.phase else None,
        }


@dataclass(slots=True)
class BudgetStatus:
    usage: TokenUsage
    band: UsageBand

    @property
    def remaining(self) -> int:
        return self.usage.budget - self.usage.estimated

    @property
    def warning_tokens(self) -> int:
        return int(self.usage.budget * self.usage.warning_threshold)

    @property
    def checkpoint_tokens(self) -> int:
        return int(self.usage.budget * self.usage.checkpoint_threshold)

    def render(self) -> str:
        usage = self.usage
        phases = [f"  {name}: {tokens} tokens" for name, tokens in usage.phase_usage.items()]
        lines = [
            "Token Budget Status",
            "===================",
            f"Estimated Used:    {usage.estimated} tokens",
            f"Total Budget:      {usage.budget} tokens",
            f"Usage:             {usage.fraction * 100:.2f}%",
            f"Remaining:         {self.remaining} tokens",
            f"Band:              {self.band.value}",
            "",
            "Thresholds:",
            f"  Warning at:      {self.warning_tokens} tokens ({usage.warning_threshold:.0%})",
            f"  Checkpoint at:   {self.checkpoint_tokens} tokens ({usage.checkpoint_threshold:.0%})",
            "",
            "Phase Breakdown:",
            *(phases or ["  No phase data"]),
        ]
        return "\n".join(lines)

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.usage.model_dump(mode="json"),
            "band": self.band.value,
            "remaining": self.remaining,
            "warning_tokens": self.warning_tokens,
            "checkpoint_tokens": self.checkpoint_tokens,
        }


@dataclass(slots=True)
class PhaseBudgetReport:
    phase: Phase
    used: int
    allotment: int

    @property
    def remaining(self) -> int:
        return self.allotment - self.used

    @property
    def exceeded(self) -> bool:
        return self.used > self.allotment

    def message(self) -> str:
        if self.exceeded:
            return f"PHASE_BUDGET_EXCEEDED: {self.phase.value} used {self.used} / {self.allotment} tokens"
        return f"Phase {self.phase.value}: {self.used} / {self.allotment} tokens (remaining: {self.remaining})"

    def as_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "used": self.used,
            "allotment": self.allotment,
            "remaining": self.remaining,
            "exceeded": self.exceeded,
        }


@dataclass(slots=True)
class BudgetDefaults:
    total: int = 200_000
    warning: float = 0.80
    checkpoint: float = 0.95


class TokenBudgetController:
    """Accumulate estimated usage in the workflow record and classify it."""

    def __init__(self, machine: PhaseStateMachine, defaults: BudgetDefaults | None = None) -> None:
        self._machine = machine
        self._defaults = defaults or BudgetDefaults()

    @classmethod
    def from_settings(
        cls, settings: AutodevSettings, machine: PhaseStateMachine
    ) -> "TokenBudgetController":
        return cls(
            machine,
            BudgetDefaults(
                total=settings.token_budget,
                warning=settings.warning_threshold,
                checkpoint=settings.checkpoint_threshold,
            ),
        )

    def init(
        self,
        total: int | None = None,
        warning: float | None = None,
        checkpoint: float | None = None,
    ) -> TokenUsage:
        """Reset the session's usage to zero and persist the thresholds."""

        total = self._defaults.total if total is None else total
        warning = self._defaults.warning if warning is None else warning
        checkpoint = self._defaults.checkpoint if checkpoint is None else checkpoint
        if total <= 0:
            raise InvalidInputError(f"Token budget must be positive, got {total}")
        if not 0 < warning < checkpoint <= 1:
            raise InvalidInputError(
                "Thresholds must satisfy 0 < warning < checkpoint <= 1 "
                f"(got warning={warning}, checkpoint={checkpoint})"
            )

        usage = TokenUsage(
            estimated=0,
            budget=total,
            warning_threshold=warning,
            checkpoint_threshold=checkpoint,
        )

        def mutate(state: WorkflowState) -> None:
            state.token_usage = usage

        self._machine.update(mutate)
        logger.info(
            "Token budget initialized",
            extra={"budget": total, "warning": warning, "checkpoint": checkpoint},
        )
        return usage

    def add(self, tokens: int, phase: Phase | str | None = None) -> UsageReport:
        if tokens < 0:
            raise InvalidInputError(f"Token count must be non-negative, got {tokens}")
        parsed = parse_phase(phase) if phase is not None else None

        def mutate(state: WorkflowState) -> None:
            usage = state.token_usage
            usage.estimated += tokens
            if parsed is not None:
                usage.phase_usage[parsed.value] = usage.phase_usage.get(parsed.value, 0) + tokens

        usage = self._machine.update(mutate).token_usage
        band = classify(usage)
        report = UsageReport(
            band=band,
            estimated=usage.estimated,
            budget=usage.budget,
            fraction=usage.fraction,
            added=tokens,
            phase=parsed,
        )
        if band is UsageBand.NORMAL:
            logger.debug("Token usage recorded", extra=report.as_dict())
        else:
            logger.warning("Token usage threshold reached", extra=report.as_dict())
        return report

    def usage(self) -> TokenUsage:
        state = self._machine.load()
        if state is None:
            return TokenUsage(
                budget=self._defaults.total,
                warning_threshold=self._defaults.warning,
                checkpoint_threshold=self._defaults.checkpoint,
            )
        return state.token_usage

    def status(self) -> BudgetStatus:
        usage = self.usage()
        return BudgetStatus(usage=usage, band=classify(usage))

    def check_phase_budget(self, phase: Phase | str) -> PhaseBudgetReport:
        """Compare one phase's usage with its fixed allotment, independent of the global bands."""

        parsed = parse_phase(phase)
        used = self.usage().phase_usage.get(parsed.value, 0)
        report = PhaseBudgetReport(phase=parsed, used=used, allotment=phase_allotment(parsed))
        if report.exceeded:
            logger.warning("Phase budget exceeded", extra=report.as_dict())
        return report

    def estimate(self, kind: str, size: str = "medium") -> int:
        return estimate(kind, size)

    def estimate_response(self, kind: str) -> int:
        return estimate_response(kind)


__all__ = [
    "BudgetDefaults",
    "BudgetStatus",
    "DEFAULT_PHASE_ALLOTMENT",
    "PHASE_ALLOTMENTS",
    "PhaseBudgetReport",
    "TokenBudgetController",
    "UsageBand",
    "UsageReport",
    "classify",
    "estimate",
    "estimate_response",
    "phase_allotment",
]
