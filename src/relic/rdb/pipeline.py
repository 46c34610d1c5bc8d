"""Streaming decode pipeline.

    source -> Loader -> input queue -> Worker x P -> output queue -> Writer -> sink

Both queues are bounded (`parallel * queue_factor` items) so a slow writer
throttles the workers, which in turn throttle the loader. The calling thread
acts as the progress monitor: it samples the shared counters once per
`progress_interval` until the writer reports completion.

Any error raised by a stage is fatal; it is recorded, every other stage unwinds
at its next queue operation, and `DecodePipeline.run` re-raises it.
"""

from __future__ import annotations

import logging
import multiprocessing
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Callable, List, Optional

from relic.core.logmsg import BraceMessage

from relic.rdb.decoder import decode_dump
from relic.rdb.errors import DecodeError, FramingError, RdbError, WriteError
from relic.rdb.lazyio import CountingReader
from relic.rdb.loader import RdbLoader
from relic.rdb.serializers import flatten, to_text

# Marks the end of a queue; one per consumer
_CLOSED = object()


class FakeLogger:
    def __getattr__(self, name: Any) -> Any:
        def faker(*args: Any, **kwargs: Any) -> Any:
            return self

        return faker


class PipelineState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(slots=True)
class CounterStats:
    read_bytes: int = 0
    write_bytes: int = 0
    records: int = 0


class Counters:
    """Process wide throughput counters; monotonic and safe to bump from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._read_bytes = 0
        self._write_bytes = 0
        self._records = 0

    def add_read(self, n: int) -> None:
        with self._lock:
            self._read_bytes += n

    def add_written(self, n: int) -> None:
        with self._lock:
            self._write_bytes += n

    def add_record(self, n: int = 1) -> None:
        with self._lock:
            self._records += n

    @property
    def read_bytes(self) -> int:
        return self._read_bytes

    @property
    def write_bytes(self) -> int:
        return self._write_bytes

    @property
    def records(self) -> int:
        return self._records

    def snapshot(self) -> CounterStats:
        return CounterStats(self._read_bytes, self._write_bytes, self._records)


@dataclass(slots=True)
class DecoderConfig:

    parallel: int = max(1, multiprocessing.cpu_count() - 1)
    logger: Optional[logging.Logger] = None
    progress_interval: float = 1.0  # seconds between status lines
    queue_factor: int = 32  # queue capacity per worker
    queue_poll_interval: float = 0.1  # how often blocked stages look for an abort
    verbose: bool = False


class _Aborted(Exception):
    """Unwinds a stage after another stage failed."""


class _Pipe:
    """Bounded queue whose blocking operations give up once the run aborts."""

    def __init__(self, capacity: int, abort: threading.Event, poll_interval: float):
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=capacity)
        self._abort = abort
        self._poll = poll_interval

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    def put(self, item: Any) -> None:
        while not self._abort.is_set():
            try:
                self._queue.put(item, timeout=self._poll)
                return
            except queue.Full:
                continue
        raise _Aborted()

    def get(self) -> Any:
        while not self._abort.is_set():
            try:
                return self._queue.get(timeout=self._poll)
            except queue.Empty:
                continue
        raise _Aborted()

    def close(self, consumers: int = 1) -> None:
        for _ in range(consumers):
            self.put(_CLOSED)


class DecodePipeline:
    """Decodes one RDB stream into JSON lines.

    A pipeline runs once; create a new one per input.
    """

    def __init__(self, config: DecoderConfig):
        self._config = config
        self.logger = config.logger or logging.getLogger(__name__)
        self.verbose_logger = self.logger if config.verbose else FakeLogger()
        self.parallel = config.parallel
        if self.parallel <= 0:
            self.logger.error(
                f"# of workers ({config.parallel}) invalid, defaulting to 1"
            )
            self.parallel = 1

        self.counters = Counters()
        self.state = PipelineState.IDLE
        self._abort = threading.Event()
        self._finished = threading.Event()
        self._error: Optional[BaseException] = None
        self._error_lock = threading.Lock()
        self._active_workers = 0
        self._workers_lock = threading.Lock()
        capacity = self.parallel * config.queue_factor
        self._input = _Pipe(capacity, self._abort, config.queue_poll_interval)
        self._output = _Pipe(capacity, self._abort, config.queue_poll_interval)

    @property
    def capacity(self) -> int:
        return self._input.capacity

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _fail(self, error: BaseException) -> None:
        with self._error_lock:
            if self._error is None:
                self._error = error
        self._abort.set()
        self._finished.set()

    def _run_stage(self, stage: Callable[..., None], *args: Any) -> None:
        try:
            stage(*args)
        except _Aborted:
            # the stage that failed first already recorded its error
            self.verbose_logger.debug(
                BraceMessage("{0} stopped after abort", threading.current_thread().name)
            )
        except RdbError as e:
            self._fail(e)
        except Exception as e:
            error = RdbError(
                f"Unexpected error in {threading.current_thread().name}: {e!r}"
            )
            error.__cause__ = e
            self._fail(error)

    def _spawn(self, name: str, stage: Callable[..., None], *args: Any) -> threading.Thread:
        return threading.Thread(
            target=self._run_stage, args=(stage, *args), name=name, daemon=True
        )

    def _load(self, reader: BinaryIO) -> None:
        try:
            loader = RdbLoader(reader, logger=self.logger)
            self.verbose_logger.info(BraceMessage("RDB Version {0}", loader.version))
            self.state = PipelineState.RUNNING
            for record in loader:
                self._input.put(record)
        except OSError as e:
            raise FramingError(f"Failed to read input: {e}") from e
        self.state = PipelineState.DRAINING
        self._input.close(self.parallel)
        self.verbose_logger.debug("Loader finished")

    def _decode(self) -> None:
        while True:
            record = self._input.get()
            if record is _CLOSED:
                break
            try:
                value = decode_dump(record.raw_value)
            except DecodeError as e:
                raise DecodeError(
                    f"Failed to decode db={record.db} key='{to_text(record.key)}': {e}"
                ) from e
            for line in flatten(record, value):
                self._output.put(line)
            self.counters.add_record()

        with self._workers_lock:
            self._active_workers -= 1
            last = self._active_workers == 0
        if last:
            self._output.close()

    def _write(self, sink: BinaryIO) -> None:
        while True:
            line = self._output.get()
            if line is _CLOSED:
                break
            if self._abort.is_set():
                raise _Aborted()
            buffer = line.encode("utf-8")
            try:
                sink.write(buffer)
                sink.flush()
            except (OSError, ValueError) as e:
                raise WriteError(f"Failed to write {len(buffer)} bytes: {e}") from e
            self.counters.add_written(len(buffer))
        self.state = PipelineState.DONE
        self._finished.set()

    def _report(self, total_size: Optional[int]) -> None:
        stats = self.counters.snapshot()
        if total_size:
            self.logger.info(
                BraceMessage(
                    "decode: total = {0} - {1:>12} [{2:>3}%]  write={3:<12}  entry={4:<12}",
                    total_size,
                    stats.read_bytes,
                    100 * stats.read_bytes // total_size,
                    stats.write_bytes,
                    stats.records,
                )
            )
        else:
            self.logger.info(
                BraceMessage(
                    "decode: total = {0:>12}  write={1:<12}  entry={2:<12}",
                    stats.read_bytes,
                    stats.write_bytes,
                    stats.records,
                )
            )

    def run(
        self, source: BinaryIO, sink: BinaryIO, total_size: Optional[int] = None
    ) -> CounterStats:
        """Decode `source` into `sink`, logging progress until done.

        Args:
            source: The RDB stream.
            sink: Receives one JSON line per output item; flushed after every line.
            total_size: Size of `source` in bytes, if known; enables the percentage.

        Returns:
            The final counter values.

        Raises:
            RdbError: The first fatal error raised by any stage.
        """
        if self.state != PipelineState.IDLE:
            raise RdbError("Pipeline has already been run")

        reader = CountingReader(source, on_read=self.counters.add_read)
        self._active_workers = self.parallel
        threads: List[threading.Thread] = [
            self._spawn("rdb-loader", self._load, reader),
            *(self._spawn(f"rdb-decoder-{i}", self._decode) for i in range(self.parallel)),
            self._spawn("rdb-writer", self._write, sink),
        ]
        self.verbose_logger.info(
            BraceMessage(
                "Starting decode with {0} workers (queue capacity {1})",
                self.parallel,
                self.capacity,
            )
        )
        for thread in threads:
            thread.start()

        finished = False
        while not finished:
            finished = self._finished.wait(self._config.progress_interval)
            self._report(total_size)

        # after an abort the loader may still be blocked reading stdin
        timeout = None if self._error is None else self._config.queue_poll_interval * 10
        for thread in threads:
            thread.join(timeout)

        if self._error is not None:
            self.state = PipelineState.ABORTED
            raise self._error
        self.logger.info("decode: done")
        return self.counters.snapshot()


__all__ = [
    "PipelineState",
    "CounterStats",
    "Counters",
    "DecoderConfig",
    "DecodePipeline",
]
