import asyncio
import math
import threading
from typing import AsyncIterator, List, Optional

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from username_index.bloom import BloomFilter
from username_index.errors import InvalidUsernameError, NotReadyError, StoreUnavailableError
from username_index.schemas import IndexConfig, IndexStats
from username_index.store import AuthoritativeStore
from username_index.utils import validate_username

class ExistenceIndexService:
    """
    Bloom filter in front of the user registry.

    check_username_exists() answers False without touching the store only
    when the filter proves absence; every other answer is store-confirmed.
    The live filter is replaced wholesale by rebuilds and never cleared in place.
    """

    def __init__(self, store: AuthoritativeStore, config: Optional[IndexConfig] = None):
        self.store = store
        self.config = config or IndexConfig()

        self._initial_capacity = self.config.minimum_capacity
        self._filter = self._new_filter(self._initial_capacity)
        self._ready = False

        # Guards the filter swap, the pending buffer and the rebuild flag
        self._state_lock = threading.Lock()
        self._pending: Optional[List[str]] = None
        self._rebuild_in_flight = False
        self._rebuild_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Bumped by reset(); rebuilds started under an older value are discarded
        self._generation = 0

        self.rebuild_count = 0
        self.last_rebuild_count = 0
        self._checks = 0
        self._fast_path_hits = 0
        self._store_lookups = 0
        self._false_positives = 0

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def rebuild_in_flight(self) -> bool:
        return self._rebuild_in_flight

    def _new_filter(self, capacity: int) -> BloomFilter:
        return BloomFilter(
            capacity=capacity,
            error_rate=self.config.target_false_positive_rate,
            lock_stripes=self.config.lock_stripes
        )

    def _capacity_for(self, expected: int) -> int:
        return max(math.ceil(expected / self.config.target_load_factor), self.config.minimum_capacity)

    def _validate(self, username) -> str:
        return validate_username(username, self.config.max_username_length)

    def _ensure_ready(self):
        if not self._ready:
            raise NotReadyError("Username index not initialized; call initialize() first")

    def _in_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    # --- Lifecycle ---

    async def initialize(self):
        """Build the filter from a full scan of the store and mark the service ready."""
        self._loop = asyncio.get_running_loop()
        await self._cancel_rebuild()

        with self._state_lock:
            self._rebuild_in_flight = True
            self._pending = []

        logger.info("🌸 Initializing username index from authoritative store...")
        try:
            total = await self._count()
            capacity = self._capacity_for(total)
            fresh = await self._populate(capacity)
            self._initial_capacity = capacity
            self._swap(fresh, mark_ready=True)
        finally:
            with self._state_lock:
                self._rebuild_in_flight = False
                self._pending = None

        logger.success(
            f"✅ Username index ready: {self._filter.item_count} usernames, "
            f"capacity={self._filter.capacity}, bits={self._filter.bit_size}, k={self._filter.hash_count}"
        )

        if self.config.rebuild_interval and (self._periodic_task is None or self._periodic_task.done()):
            self._periodic_task = asyncio.create_task(self._periodic_rebuild(self.config.rebuild_interval))

        self._maybe_schedule_rebuild()

    def reset(self):
        """Swap in an empty filter at the initial capacity. The store is not touched."""
        task, self._rebuild_task = self._rebuild_task, None
        if task and not task.done():
            if self._in_loop() or self._loop is None:
                task.cancel()
            else:
                self._loop.call_soon_threadsafe(task.cancel)

        with self._state_lock:
            self._generation += 1
            self._filter = self._new_filter(self._initial_capacity)
            self._pending = None
            self._rebuild_in_flight = False
            self.last_rebuild_count = 0
            self._checks = 0
            self._fast_path_hits = 0
            self._store_lookups = 0
            self._false_positives = 0

        logger.warning(f"♻️ Username index reset (capacity={self._initial_capacity})")

    async def close(self):
        if self._periodic_task:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
        await self._cancel_rebuild()

    # --- Queries ---

    async def check_username_exists(self, username: str, timeout: Optional[float] = None) -> bool:
        name = self._validate(username)
        self._ensure_ready()
        self._checks += 1

        if not self._filter.might_contain(name):
            self._fast_path_hits += 1
            return False

        self._store_lookups += 1
        exists = await self._confirm(name, self.config.fallback_timeout if timeout is None else timeout)
        if not exists:
            self._false_positives += 1
            logger.debug(f"Filter false positive for '{name}'")
        return exists

    def might_exist(self, username: str) -> bool:
        """Raw filter answer for diagnostics. Uniqueness decisions must use check_username_exists()."""
        name = self._validate(username)
        if not self._ready:
            return True
        return self._filter.might_contain(name)

    def add_username(self, username: str):
        """Record a username the store has already committed."""
        name = self._validate(username)

        if self._pending is not None or not self._ready:
            with self._state_lock:
                # Buffered so a scan whose snapshot predates this commit cannot miss it
                if self._pending is not None:
                    self._pending.append(name)
                if not self._ready:
                    raise NotReadyError("Username index not initialized; call initialize() first")
                self._filter.add(name)
        else:
            self._filter.add(name)

        self._maybe_schedule_rebuild()

    def get_stats(self) -> IndexStats:
        current = self._filter
        return IndexStats(
            capacity=current.capacity,
            inserted_count=current.item_count,
            estimated_false_positive_rate=current.estimated_false_positive_rate(),
            saturation=current.saturation(),
            initialized=self._ready,
            bit_size=current.bit_size,
            hash_count=current.hash_count,
            fill_ratio=current.fill_ratio(),
            rebuild_in_flight=self._rebuild_in_flight,
            rebuild_count=self.rebuild_count,
            last_rebuild_count=self.last_rebuild_count,
            checks=self._checks,
            fast_path_hits=self._fast_path_hits,
            store_lookups=self._store_lookups,
            false_positives=self._false_positives,
        )

    # --- Rebuild ---

    def request_rebuild(self, grow: bool = False) -> bool:
        """
        Schedule a background rebuild on the service loop. Safe from any thread.
        Returns False when one is already in flight or the service is not ready.
        """
        with self._state_lock:
            if self._rebuild_in_flight or self._loop is None or not self._ready:
                return False
            self._rebuild_in_flight = True
            self._pending = []
            generation = self._generation

        try:
            if self._in_loop():
                self._spawn_rebuild(grow, generation)
            else:
                self._loop.call_soon_threadsafe(self._spawn_rebuild, grow, generation)
        except RuntimeError as e:
            with self._state_lock:
                self._rebuild_in_flight = False
                self._pending = None
            logger.warning(f"Could not schedule rebuild: {e}")
            return False
        return True

    async def rebuild(self, grow: bool = False):
        """Trigger a rebuild (or join the one in flight) and wait for it."""
        self._ensure_ready()
        self.request_rebuild(grow)
        await self.wait_for_rebuild()

    async def wait_for_rebuild(self):
        task = self._rebuild_task
        if task and not task.done():
            await task

    def _maybe_schedule_rebuild(self):
        if self._filter.saturation() > self.config.rebuild_threshold:
            if self.request_rebuild(grow=True):
                logger.info(f"📈 Filter saturation {self._filter.saturation():.2f} above threshold, rebuild scheduled")

    def _spawn_rebuild(self, grow: bool, generation: int):
        if generation != self._generation:
            logger.debug("Dropping rebuild requested before reset")
            return
        self._rebuild_task = asyncio.get_running_loop().create_task(self._run_rebuild(grow, generation))

    async def _run_rebuild(self, grow: bool, generation: int):
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.rebuild_max_attempts),
                wait=wait_exponential(
                    multiplier=1,
                    min=self.config.rebuild_backoff_min,
                    max=self.config.rebuild_backoff_max
                ),
                retry=retry_if_exception_type(StoreUnavailableError),
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    await self._rebuild_once(grow, generation)
        except StoreUnavailableError as e:
            logger.error(f"❌ Rebuild abandoned after {self.config.rebuild_max_attempts} attempts, keeping current filter: {e}")
        except asyncio.CancelledError:
            logger.warning("⚠️ Rebuild cancelled")
            raise
        except Exception as e:
            logger.exception(f"Rebuild crashed: {e}")
            raise
        finally:
            if self._rebuild_task is asyncio.current_task():
                with self._state_lock:
                    self._rebuild_in_flight = False
                    self._pending = None

    async def _rebuild_once(self, grow: bool, generation: int):
        current = self._filter
        if grow:
            capacity = max(2 * current.capacity, math.ceil(current.item_count / self.config.target_load_factor))
        else:
            capacity = max(current.capacity, self._capacity_for(await self._count()))

        logger.info(f"🔄 Rebuilding username index (capacity {current.capacity} -> {capacity})")
        fresh = await self._populate(capacity)
        if not self._swap(fresh, generation=generation):
            logger.warning("⚠️ Index was reset during the scan, discarding rebuilt filter")
            return
        self.rebuild_count += 1
        logger.success(f"✅ Rebuild complete: {fresh.item_count} usernames, capacity={fresh.capacity}")

    def _log_retry(self, retry_state: RetryCallState):
        error = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(f"⚠️ Rebuild attempt {retry_state.attempt_number} failed: {error}. Retrying in {wait:.1f}s")

    async def _periodic_rebuild(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            if self.request_rebuild():
                logger.debug("⏰ Periodic rebuild requested")

    async def _cancel_rebuild(self):
        task, self._rebuild_task = self._rebuild_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        with self._state_lock:
            self._rebuild_in_flight = False
            self._pending = None

    def _swap(self, fresh: BloomFilter, mark_ready: bool = False, generation: Optional[int] = None) -> bool:
        with self._state_lock:
            if generation is not None and generation != self._generation:
                return False
            replayed = self._pending or []
            for name in replayed:
                fresh.add(name)
            self._pending = None
            self._filter = fresh
            self.last_rebuild_count = fresh.item_count
            if mark_ready:
                self._ready = True
        if replayed:
            logger.debug(f"Replayed {len(replayed)} usernames added during scan")
        return True

    # --- Store access ---

    async def _confirm(self, name: str, timeout: float) -> bool:
        try:
            return bool(await asyncio.wait_for(self.store.exists(name), timeout=timeout))
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(f"Store lookup for '{name}' timed out after {timeout}s") from e
        except Exception as e:
            raise StoreUnavailableError(f"Store lookup for '{name}' failed: {e}") from e

    async def _count(self) -> int:
        try:
            return int(await asyncio.wait_for(self.store.count_usernames(), timeout=self.config.scan_timeout))
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError("Timed out counting usernames") from e
        except Exception as e:
            raise StoreUnavailableError(f"Failed to count usernames: {e}") from e

    async def _populate(self, capacity: int) -> BloomFilter:
        fresh = self._new_filter(capacity)
        usernames = None
        try:
            usernames = self.store.stream_all_usernames()
            await asyncio.wait_for(self._stream_into(fresh, usernames), timeout=self.config.scan_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(f"Username scan exceeded {self.config.scan_timeout}s") from e
        except Exception as e:
            raise StoreUnavailableError(f"Username scan failed: {e}") from e
        finally:
            # A cancelled scan leaves the iterator suspended; release its cursor now
            aclose = getattr(usernames, "aclose", None)
            if aclose is not None:
                await aclose()
        return fresh

    async def _stream_into(self, target: BloomFilter, usernames: AsyncIterator[str]):
        skipped = 0
        async for raw in usernames:
            try:
                name = self._validate(raw)
            except InvalidUsernameError:
                skipped += 1
                continue
            target.add(name)
            if target.item_count % 1000 == 0:
                await asyncio.sleep(0)
        if skipped:
            logger.warning(f"Skipped {skipped} unusable usernames during scan")
