"""Waiting for CI checks on a publication.

Checks are polled on a fixed interval with a little jitter, up to a ceiling
for the whole wait; a publisher call still in flight when the ceiling
passes is abandoned. Failed checks can be re-triggered a bounded number of
times before the failure is final.
"""

import asyncio
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from rich.console import Console

from ..classifier import ErrorClassifier
from ..errors import CheckTimeoutFault, ChecksFailedFault, StepTimeoutFault
from ..models import CheckStatus, CIConfig, FaultKind, MergeResult, StepName
from ..protocols import Publisher


console = Console()

T = TypeVar("T")


class CIMonitor:
    """Polls a publisher until its checks settle.

    Args:
        publisher: Source of check status
        config: Interval, ceiling and re-trigger budget
        classifier: Decides which polling errors are worth riding out
        sleep: Awaitable sleep, injectable for tests
        clock: Monotonic clock in seconds, injectable for tests
        rng: Random source for interval jitter
    """

    def __init__(
        self,
        publisher: Publisher,
        config: Optional[CIConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.publisher = publisher
        self.config = config or CIConfig()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    def poll_interval(self) -> float:
        interval = self.config.poll_interval_seconds
        jitter = interval * self.config.poll_jitter_factor
        return max(0.0, interval + self._rng.uniform(-jitter, jitter))

    async def wait_for_checks(
        self,
        publication_id: str,
        retriggers_used: int = 0,
        on_retrigger: Optional[Callable[[], None]] = None,
    ) -> CheckStatus:
        """Wait until checks pass.

        Args:
            publication_id: What to poll
            retriggers_used: Re-triggers already spent on this publication
            on_retrigger: Called after each re-trigger so the caller can
                persist the spent budget

        Raises:
            CheckTimeoutFault: checks did not settle within the ceiling
            ChecksFailedFault: checks failed and the re-trigger budget is spent
        """
        started = self._clock()
        polls = 0
        console.print(
            f"[dim]Waiting for checks on {publication_id} "
            f"(every ~{self.config.poll_interval_seconds:.0f}s, up to {self.config.timeout_seconds:.0f}s)[/dim]"
        )

        while True:
            elapsed = self._clock() - started
            if elapsed > self.config.timeout_seconds:
                raise self._ceiling_reached(publication_id, elapsed, polls)

            polls += 1
            try:
                status = await self._before_ceiling(
                    self.publisher.poll_checks(publication_id), started, publication_id, polls
                )
            except Exception as e:
                error_class = self.classifier.classify(e)
                if error_class.kind != FaultKind.RETRYABLE:
                    raise
                console.print(f"[yellow]Polling checks failed ({error_class.code}), will poll again: {e}[/yellow]")
                await self._sleep(self.poll_interval())
                continue

            if status.is_success:
                console.print(f"[green]Checks passed on {publication_id}[/green] after {elapsed:.0f}s")
                return status

            if status.is_complete:
                if retriggers_used >= self.config.max_retriggers:
                    raise ChecksFailedFault(
                        f"Checks on {publication_id} concluded '{status.conclusion}' "
                        f"after {retriggers_used} re-trigger(s)",
                        {"publication_id": publication_id, "conclusion": status.conclusion,
                         "retriggers": retriggers_used},
                    )
                console.print(
                    f"[yellow]Checks on {publication_id} concluded '{status.conclusion}', "
                    f"re-triggering ({retriggers_used + 1}/{self.config.max_retriggers})[/yellow]"
                )
                await self._before_ceiling(
                    self.publisher.retrigger_checks(publication_id), started, publication_id, polls
                )
                retriggers_used += 1
                if on_retrigger is not None:
                    on_retrigger()

            await self._sleep(self.poll_interval())

    def _ceiling_reached(self, publication_id: str, elapsed: float, polls: int) -> CheckTimeoutFault:
        return CheckTimeoutFault(
            f"Checks on {publication_id} did not finish within {self.config.timeout_seconds:.0f}s",
            {"publication_id": publication_id, "elapsed_seconds": elapsed, "polls": polls},
        )

    async def _before_ceiling(self, call: Awaitable[T], started: float, publication_id: str, polls: int) -> T:
        """Await a publisher call, abandoning it once the ceiling passes.

        Errors raised by the call itself propagate unchanged.
        """
        remaining = self.config.timeout_seconds - (self._clock() - started)
        task = asyncio.ensure_future(call)
        done, _ = await asyncio.wait({task}, timeout=max(remaining, 0.0))
        if not done:
            task.cancel()
            raise self._ceiling_reached(publication_id, self._clock() - started, polls)
        return task.result()

    async def merge(self, publication_id: str) -> MergeResult:
        """Merge a publication, bounded by merge_timeout_seconds.

        Raises:
            StepTimeoutFault: the merge did not return in time
        """
        try:
            return await asyncio.wait_for(
                self.publisher.merge(publication_id), timeout=self.config.merge_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise StepTimeoutFault(StepName.VERIFY_AND_MERGE.value, self.config.merge_timeout_seconds) from e
