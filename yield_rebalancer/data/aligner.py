"""
Snapshot Aligner

Builds one temporally coherent cross-market observation for a reference
instant T: for every required entity, the earliest observation strictly
after T. Either every entity resolves or the whole snapshot fails.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.errors import DataInconsistent, DataUnavailable
from yield_rebalancer.data.entities import (
    NOT_YET_AVAILABLE,
    EntityKind,
    EntityRef,
    HedgeInstrumentState,
    MarketStateObservation,
    Observation,
    ObservationResult,
    TokenPriceObservation,
)
from yield_rebalancer.utils.rate_limiter import RateLimiter
from yield_rebalancer.utils.retry import RetryPolicy, call_with_retries


class ObservationSource(Protocol):
    """Read side of the observation store as seen by the aligner."""

    def get_latest_or_after(self, entity: EntityRef, timestamp: datetime) -> ObservationResult:
        ...


@dataclass
class AlignedSnapshot:
    """One observation per required entity, all strictly after `reference_time`."""

    reference_time: datetime
    observations: Dict[EntityRef, Observation] = field(default_factory=dict)

    def entities(self) -> List[EntityRef]:
        return sorted(self.observations)

    def get(self, entity: EntityRef) -> Optional[Observation]:
        return self.observations.get(entity)

    def token_price(self, token_id: int) -> Optional[TokenPriceObservation]:
        return self.observations.get(EntityRef.token(token_id))  # type: ignore[return-value]

    def market_state(self, market_id: int) -> Optional[MarketStateObservation]:
        return self.observations.get(EntityRef.market(market_id))  # type: ignore[return-value]

    def hedge_state(self, instrument_id: int) -> Optional[HedgeInstrumentState]:
        return self.observations.get(EntityRef.hedge(instrument_id))  # type: ignore[return-value]

    @property
    def latest_timestamp(self) -> datetime:
        return max(o.timestamp for o in self.observations.values())


class SnapshotAligner:
    """
    Cross-source time alignment.

    Picking the earliest observation *after* T means every value used for
    the decision reflects information available at-or-after T, so a
    partially updated source cannot leak an older view into the snapshot.
    """

    def __init__(
        self,
        config: Config,
        source: ObservationSource,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.source = source
        self.rate_limiter = rate_limiter or RateLimiter(
            config.aligner.rate_limit_per_sec, config.aligner.rate_limit_burst
        )
        self.sleep = sleep
        self.retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_sec=config.retry.base_delay_sec,
            factor=config.retry.factor,
            max_delay_sec=config.retry.max_delay_sec,
            jitter=config.retry.jitter,
        )

    def align(self, reference_time: datetime, required: Sequence[EntityRef]) -> AlignedSnapshot:
        """
        Align all `required` entities to `reference_time`.

        Raises:
            DataUnavailable: some entity has no observation after T yet, or
                the fetch deadline passed
            DataInconsistent: a source returned an observation that breaks
                the strictly-after / same-entity contract
        """
        entities = sorted(set(required))
        if not entities:
            return AlignedSnapshot(reference_time=reference_time)

        deadline_sec = self.config.aligner.deadline_sec
        started = time.monotonic()
        results: Dict[EntityRef, ObservationResult] = {}

        workers = max(1, min(self.config.aligner.max_workers, len(entities)))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="aligner")
        try:
            futures = {e: pool.submit(self._fetch, e, reference_time) for e in entities}
            for entity in entities:
                remaining = deadline_sec - (time.monotonic() - started)
                try:
                    results[entity] = futures[entity].result(timeout=max(0.0, remaining))
                except FutureTimeout:
                    for f in futures.values():
                        f.cancel()
                    raise DataUnavailable(
                        f"snapshot for {reference_time.isoformat()} exceeded {deadline_sec:.0f}s deadline "
                        f"waiting on {entity}",
                        missing=[e for e in entities if e not in results],
                    )
                except (ConnectionError, OSError) as e:
                    raise DataUnavailable(
                        f"source failed for {entity} after retries: {e}", missing=[entity]
                    ) from e
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        missing = [e for e in entities if results[e] is NOT_YET_AVAILABLE]
        if missing:
            names = ", ".join(str(e) for e in missing)
            print(f"[Aligner] Data not yet available after {reference_time.isoformat()}: {names}")
            raise DataUnavailable(f"data not yet available for {names}", missing=missing)

        snapshot = AlignedSnapshot(reference_time=reference_time)
        for entity in entities:
            obs = results[entity]
            self._check(entity, obs, reference_time)
            snapshot.observations[entity] = obs  # type: ignore[assignment]

        print(f"[Aligner] Aligned {len(entities)} entities after {reference_time.isoformat()}")
        return snapshot

    def _fetch(self, entity: EntityRef, reference_time: datetime) -> ObservationResult:
        def fetch_once():
            if not self.rate_limiter.acquire(timeout=self.config.aligner.deadline_sec):
                raise TimeoutError(f"rate limiter wait exceeded for {entity}")
            return self.source.get_latest_or_after(entity, reference_time)

        def on_error(attempt: int, e: BaseException):
            print(f"[Aligner] Fetch {entity} attempt {attempt} failed: {e}")

        return call_with_retries(
            fetch_once,
            policy=self.retry_policy,
            retry_on=(ConnectionError, TimeoutError, OSError),
            sleep=self.sleep,
            on_error=on_error,
        )

    @staticmethod
    def _check(entity: EntityRef, obs: Observation, reference_time: datetime) -> None:
        expected_type = {
            EntityKind.TOKEN: TokenPriceObservation,
            EntityKind.POOL_MARKET: MarketStateObservation,
            EntityKind.HEDGE_INSTRUMENT: HedgeInstrumentState,
        }[entity.kind]
        if not isinstance(obs, expected_type) or obs.entity != entity:
            raise DataInconsistent(f"source returned {obs!r} for {entity}")
        if obs.timestamp <= reference_time:
            raise DataInconsistent(
                f"{entity}: observation at {obs.timestamp.isoformat()} is not after "
                f"{reference_time.isoformat()}"
            )
