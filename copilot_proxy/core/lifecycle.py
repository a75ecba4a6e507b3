"""
Per-request state machine.

RECEIVED -> AUTHENTICATED -> TUNNELING -> RELAYING -> COMPLETED, with FAILED
reachable from every non-terminal stage. The lifecycle records exactly one
outcome into the metrics registry, whichever way the request ends.
"""

import time
from enum import Enum
from typing import Callable, Optional

from copilot_proxy.core.errors import ProxyError
from copilot_proxy.services.metrics import MetricsRegistry, RequestOutcome


class Stage(str, Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    TUNNELING = "tunneling"
    RELAYING = "relaying"
    COMPLETED = "completed"
    FAILED = "failed"


_NEXT_STAGE = {
    Stage.RECEIVED: Stage.AUTHENTICATED,
    Stage.AUTHENTICATED: Stage.TUNNELING,
    Stage.TUNNELING: Stage.RELAYING,
    Stage.RELAYING: Stage.COMPLETED,
}

TERMINAL_STAGES = (Stage.COMPLETED, Stage.FAILED)


class RequestLifecycle:
    def __init__(
        self,
        metrics: MetricsRegistry,
        request_type: str = "sync",
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.metrics = metrics
        self.request_type = request_type
        self.stage = Stage.RECEIVED
        self.failure_kind: Optional[str] = None
        self.outcome: Optional[RequestOutcome] = None
        self._clock = clock
        self._started = clock()

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def advance(self, stage: Stage) -> None:
        """Move to the next stage; stages can't be skipped or revisited."""
        if stage in TERMINAL_STAGES:
            raise RuntimeError(f"Use complete() or fail() to reach {stage.value}")
        if _NEXT_STAGE.get(self.stage) != stage:
            raise RuntimeError(f"Illegal transition {self.stage.value} -> {stage.value}")
        self.stage = stage

    def complete(self, status_code: int) -> RequestOutcome:
        """Upstream body fully relayed; status is the upstream's own."""
        if self.finished:
            return self.outcome
        if self.stage != Stage.RELAYING:
            raise RuntimeError(f"Cannot complete a request in stage {self.stage.value}")
        self.stage = Stage.COMPLETED
        return self._record(status_code)

    def fail(self, error: ProxyError, status_code: Optional[int] = None) -> RequestOutcome:
        """Terminate the request.

        status_code overrides the error's own status once a response has
        already been started with a different one.
        """
        if self.finished:
            return self.outcome
        self.stage = Stage.FAILED
        self.failure_kind = error.kind
        return self._record(status_code if status_code is not None else error.status_code)

    def _record(self, status_code: int) -> RequestOutcome:
        self.outcome = RequestOutcome(
            status_code=status_code,
            request_type=self.request_type,
            duration_seconds=max(self._clock() - self._started, 0.0),
        )
        self.metrics.observe(self.outcome)
        return self.outcome
