#!/usr/bin/env python3
"""
Domain Prober
=============
Drains candidate domain names out of plain-text lists, attempts a TCP
connection to each on port 80, and sorts them into valid (connected) and
invalid (refused, unreachable, unresolvable or timed out) result lists.

Entries are pulled at random from every file in the input directory and
removed from the file as they go, so an interrupted run can simply be
restarted on the leftovers.
"""

import argparse
import contextlib
import logging
import math
import os
import queue
import random
import socket
import stat
import sys
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from threading import Lock

import psutil
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DOMAINS_DIR = "domains"
VALID_DIR = "valid"
INVALID_DIR = "invalid"
LOGS_DIR = "logs"

VALID_FILE = "valid.txt"
INVALID_FILE = "invalid.txt"
LOGS_FILE = "logs.txt"

HTTP_PORT = 80
DIAL_TIMEOUT = 5.0  # seconds
RESCAN_PAUSE = 1.0  # seconds between passes in watch mode
STATUS_INTERVAL = 1.0  # seconds between status refreshes

VALID = "valid"
INVALID = "invalid"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)


def setup_logging(logs_dir: str | Path = LOGS_DIR, verbose: bool = False) -> Path:
    """
    Send every record to ``logs_dir/logs.txt`` and only warnings and errors
    to the console, where the status bar lives.

    Returns the path of the log file.
    """
    logs_path = ensure_dir(logs_dir) / LOGS_FILE
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    file_handler = logging.FileHandler(logs_path, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.WARNING)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[file_handler, console_handler],
        force=True,
    )
    return logs_path


# ---------------------------------------------------------------------------
# Line stores
# ---------------------------------------------------------------------------

class StoreEmptyError(Exception):
    """Raised when a line store has no entries left to hand out."""

    def __init__(self, path: str | Path):
        super().__init__("file is empty")
        self.path = Path(path)


def ensure_dir(path: str | Path) -> Path:
    """Create ``path`` (and parents) if it does not exist yet."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def read_lines(path: str | Path) -> list[str]:
    """Return the non-blank, whitespace-stripped lines of a file."""
    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def write_lines(path: str | Path, lines: list[str]) -> None:
    """
    Replace ``path`` with ``lines``, each terminated by a newline.

    The lines go to a hidden temp file next to ``path`` which is then moved
    over it, so a failed write leaves the old contents in place.
    """
    path = Path(path)
    tmp = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with tmp:
            tmp.writelines(line + "\n" for line in lines)
        with contextlib.suppress(FileNotFoundError):
            os.chmod(tmp.name, stat.S_IMODE(os.stat(path).st_mode))
        os.replace(tmp.name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp.name)
        raise


def take_random_line(path: str | Path, rng: random.Random | None = None) -> str:
    """
    Remove one uniformly chosen entry from the store at ``path`` and return it.

    The file is rewritten without the chosen entry before returning, so every
    entry handed out is gone from disk. The read-modify-write is not atomic:
    a single process is expected to own the file, and a crash between the
    read and the rewrite loses at most the entry being taken.

    Raises
    ------
    StoreEmptyError
        The store has no entries.
    OSError
        The file could not be read or rewritten.
    """
    rng = rng or random
    lines = read_lines(path)
    if not lines:
        raise StoreEmptyError(path)

    domain = lines.pop(rng.randrange(len(lines)))
    write_lines(path, lines)
    return domain


def list_stores(directory: str | Path) -> list[Path]:
    """
    Regular files in ``directory``, sorted by name. Hidden files, including
    leftover rewrite temp files, are skipped. Raises OSError if unreadable.
    """
    return sorted(
        (
            entry
            for entry in Path(directory).iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        ),
        key=lambda p: p.name,
    )


# ---------------------------------------------------------------------------
# TCP probing
# ---------------------------------------------------------------------------

def probe_domain(domain: str, timeout: float = DIAL_TIMEOUT, port: int = HTTP_PORT) -> str:
    """
    Try a single TCP handshake with ``domain:port``.

    Returns ``VALID`` when the connection is established (it is closed again
    straight away, nothing is sent) and ``INVALID`` for any failure.
    """
    try:
        with socket.create_connection((domain, port), timeout=timeout):
            pass
    except socket.timeout:
        logger.debug("%s: no answer within %.1fs", domain, timeout)
        return INVALID
    except socket.gaierror as exc:
        logger.debug("%s: could not resolve: %s", domain, exc)
        return INVALID
    except (OSError, ValueError) as exc:
        # ValueError covers names the IDNA codec rejects
        logger.debug("%s: connection failed: %s", domain, exc)
        return INVALID

    logger.debug("%s: connection established", domain)
    return VALID


# ---------------------------------------------------------------------------
# Result lists
# ---------------------------------------------------------------------------

class ResultSink:
    """
    Appends classified domains to the valid and invalid result lists.

    Each record opens its file in append mode and writes one complete line in
    a single call, so concurrent workers never split each other's lines. The
    counters are only for reporting.
    """

    def __init__(self, valid_path: str | Path, invalid_path: str | Path):
        self.paths = {VALID: Path(valid_path), INVALID: Path(invalid_path)}
        self._counts = {VALID: 0, INVALID: 0}
        self._lock = Lock()

    def record(self, classification: str, domain: str) -> None:
        path = self.paths.get(classification)
        if path is None:
            raise ValueError(f"Unknown classification: {classification!r}")

        with open(path, "a", encoding="utf-8") as f:
            f.write(domain + "\n")

        with self._lock:
            self._counts[classification] += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


# ---------------------------------------------------------------------------
# Intake queue and worker pool
# ---------------------------------------------------------------------------

_CLOSED = object()


class IntakeQueue:
    """
    Closable hand-off between the feeder and the workers.

    ``put`` blocks while the queue is full. ``close`` queues one end marker per
    consumer behind the remaining entries; a consumer's ``get`` returns None
    once it reaches its marker.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: queue.Queue = queue.Queue(maxsize)
        self._closed = False
        self._lock = Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, domain: str) -> None:
        if self._closed:
            raise RuntimeError("intake queue is closed")
        self._queue.put(domain)

    def close(self, consumers: int) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for _ in range(consumers):
            self._queue.put(_CLOSED)

    def get(self) -> str | None:
        item = self._queue.get()
        return None if item is _CLOSED else item


class WorkerPool:
    """
    Fixed number of threads, each probing domains off a shared intake queue
    and recording the outcome in the result sink.
    """

    def __init__(
        self,
        threads: int,
        sink: ResultSink,
        timeout: float = DIAL_TIMEOUT,
        port: int = HTTP_PORT,
        probe=None,
    ):
        if threads < 1:
            raise ValueError(f"threads must be at least 1, got {threads}")
        self.size = threads
        self.sink = sink
        self.timeout = timeout
        self.port = port
        self.intake = IntakeQueue(maxsize=threads)
        self._probe = probe or probe_domain
        self._executor: ThreadPoolExecutor | None = None
        self._futures = {}

    def start(self) -> None:
        """Spawn all workers. Must be called before anything is queued."""
        if self._executor is not None:
            raise RuntimeError("worker pool already started")
        self._executor = ThreadPoolExecutor(
            max_workers=self.size, thread_name_prefix="prober"
        )
        self._futures = {
            self._executor.submit(self._work, worker_id): worker_id
            for worker_id in range(1, self.size + 1)
        }

    def shutdown(self) -> int:
        """
        Close the intake queue, wait for every worker to drain it and exit.

        Returns the number of domains handled across all workers.
        """
        if self._executor is None:
            return 0

        self.intake.close(self.size)
        handled = 0
        for future in as_completed(self._futures):
            worker_id = self._futures[future]
            try:
                handled += future.result()
            except Exception as exc:
                logger.error("Worker %d died: %s", worker_id, exc)
        self._executor.shutdown(wait=True)
        self._executor = None
        return handled

    def _work(self, worker_id: int) -> int:
        handled = 0
        while True:
            domain = self.intake.get()
            if domain is None:
                break

            logger.info("Worker %d: connecting to %s...", worker_id, domain)
            try:
                classification = self._probe(domain, timeout=self.timeout, port=self.port)
                self.sink.record(classification, domain)
                logger.info("Worker %d: %s is %s", worker_id, domain, classification)
            except Exception as exc:
                logger.error("Worker %d: unhandled error checking %s: %s", worker_id, domain, exc)
            handled += 1

        logger.debug("Worker %d: finished after %d domains", worker_id, handled)
        return handled


# ---------------------------------------------------------------------------
# Feeder
# ---------------------------------------------------------------------------

def _drain_store(path: Path, intake: IntakeQueue, rng: random.Random | None = None) -> int:
    """Push every entry of one store onto the intake queue. Returns the count."""
    fed = 0
    while True:
        try:
            domain = take_random_line(path, rng)
        except StoreEmptyError:
            if fed:
                logger.info("File %s drained (%d domains queued).", path.name, fed)
            else:
                logger.debug("File %s is empty.", path.name)
            return fed
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Error reading/removing line from %s: %s", path, exc)
            return fed

        intake.put(domain)
        fed += 1


def feed(
    domains_dir: str | Path,
    intake: IntakeQueue,
    once: bool = False,
    pause: float = RESCAN_PAUSE,
    rng: random.Random | None = None,
    stop: threading.Event | None = None,
) -> bool:
    """
    Move entries from every store in ``domains_dir`` onto ``intake``.

    Each file is drained to exhaustion before moving on to the next one. With
    ``once`` the function returns after a single pass; otherwise it waits
    ``pause`` seconds and rescans until ``stop`` is set.

    Returns False if the input directory could not be listed, True otherwise.
    An input directory without files ends the run.
    """
    stop = stop or threading.Event()
    passes = 0

    while True:
        try:
            stores = list_stores(domains_dir)
        except OSError as exc:
            logger.error("Error reading domains directory %s: %s", domains_dir, exc)
            return False

        if not stores:
            logger.warning("No files in %s to check.", domains_dir)
            return True

        passes += 1
        fed = sum(_drain_store(store, intake, rng) for store in stores)
        logger.debug("Pass %d over %d files queued %d domains", passes, len(stores), fed)

        if once or stop.wait(pause):
            return True


# ---------------------------------------------------------------------------
# Status display
# ---------------------------------------------------------------------------

class StatusMonitor:
    """
    Background tqdm line showing pool size, results so far and process memory.

    It only reads sink snapshots and never touches the pipeline itself.
    """

    def __init__(self, pool_size: int, sink: ResultSink, interval: float = STATUS_INTERVAL):
        self.pool_size = pool_size
        self.interval = interval
        self._sink = sink
        self._process = psutil.Process()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="status", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()

    def memory_gb(self) -> float:
        return self._process.memory_info().rss / (1024 ** 3)

    def render(self, bar) -> None:
        counts = self._sink.snapshot()
        bar.n = counts[VALID] + counts[INVALID]
        bar.set_postfix(
            threads=self.pool_size,
            valid=counts[VALID],
            invalid=counts[INVALID],
            mem=f"{self.memory_gb():.2f}GB",
        )

    def _run(self) -> None:
        with tqdm(desc="Probing domains", unit="domain") as bar:
            while not self._stop.wait(self.interval):
                self.render(bar)
            self.render(bar)


# ---------------------------------------------------------------------------
# Main orchestration
# ---------------------------------------------------------------------------

def run_prober(
    domains_dir: str | Path = DOMAINS_DIR,
    valid_dir: str | Path = VALID_DIR,
    invalid_dir: str | Path = INVALID_DIR,
    threads: int = 1,
    once: bool = False,
    pause: float = RESCAN_PAUSE,
    timeout: float = DIAL_TIMEOUT,
    port: int = HTTP_PORT,
    show_status: bool = True,
    stop: threading.Event | None = None,
) -> dict:
    """
    Run the whole pipeline: start the workers, feed them until the input is
    exhausted (or forever in watch mode), then drain and stop the pool.

    Returns ``{"valid": n, "invalid": m, "aborted": bool}``.
    """
    sink = ResultSink(
        ensure_dir(valid_dir) / VALID_FILE,
        ensure_dir(invalid_dir) / INVALID_FILE,
    )
    pool = WorkerPool(threads, sink, timeout=timeout, port=port)
    monitor = StatusMonitor(pool.size, sink) if show_status else None

    logger.info(
        "Probing %s with %d workers (%s mode)...",
        domains_dir,
        pool.size,
        "single-pass" if once else "watch",
    )

    redirect = logging_redirect_tqdm() if show_status else contextlib.nullcontext()
    with redirect:
        pool.start()
        if monitor:
            monitor.start()
        try:
            ok = feed(domains_dir, pool.intake, once=once, pause=pause, stop=stop)
        finally:
            handled = pool.shutdown()
            if monitor:
                monitor.stop()

    summary = sink.snapshot()
    summary["aborted"] = not ok
    logger.info(
        "Handled %d domains: %d valid, %d invalid",
        handled,
        summary[VALID],
        summary[INVALID],
    )
    return summary


def _print_summary(summary: dict) -> None:
    """Print a human-readable summary to stdout."""
    print("\n" + "=" * 60)
    print("DOMAIN PROBE SUMMARY")
    print("=" * 60)
    print(f"  Total probed:   {summary.get(VALID, 0) + summary.get(INVALID, 0)}")
    print(f"  Valid:          {summary.get(VALID, 0)}")
    print(f"  Invalid:        {summary.get(INVALID, 0)}")
    if summary.get("aborted"):
        print("  Stopped early: the domains directory could not be read.")
    print("=" * 60)
    print()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def _seconds(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number of seconds: {value!r}")
    if not math.isfinite(seconds):
        raise argparse.ArgumentTypeError(f"seconds must be finite, got {value!r}")
    return seconds


def _positive_seconds(value: str) -> float:
    seconds = _seconds(value)
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {value!r}")
    return seconds


def _non_negative_seconds(value: str) -> float:
    seconds = _seconds(value)
    if seconds < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value!r}")
    return seconds


def _tcp_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be 1-65535, got {value!r}")
    return port


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Sort domains into valid/invalid lists by TCP connect on port 80.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python prober.py                        # Watch domains/ with 1 worker\n"
            "  python prober.py --threads 200          # 200 concurrent probes\n"
            "  python prober.py --once --threads 50    # Single pass, then exit\n"
        ),
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=1,
        help="Number of concurrent workers (default: 1)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        dest="once",
        action="store_true",
        help="Drain the input directory once and exit",
    )
    mode.add_argument(
        "--watch",
        dest="once",
        action="store_false",
        help="Keep rescanning the input directory (default)",
    )
    parser.set_defaults(once=False)
    parser.add_argument(
        "--pause",
        type=_non_negative_seconds,
        default=RESCAN_PAUSE,
        help=f"Seconds between rescans in watch mode (default: {RESCAN_PAUSE})",
    )
    parser.add_argument(
        "--timeout",
        type=_positive_seconds,
        default=DIAL_TIMEOUT,
        help=f"Connect timeout per domain in seconds (default: {DIAL_TIMEOUT})",
    )
    parser.add_argument(
        "--port",
        type=_tcp_port,
        default=HTTP_PORT,
        help=f"TCP port to probe (default: {HTTP_PORT})",
    )
    parser.add_argument("--domains-dir", default=DOMAINS_DIR, help="Input directory")
    parser.add_argument("--valid-dir", default=VALID_DIR, help="Directory for valid.txt")
    parser.add_argument("--invalid-dir", default=INVALID_DIR, help="Directory for invalid.txt")
    parser.add_argument("--logs-dir", default=LOGS_DIR, help="Directory for logs.txt")
    parser.add_argument(
        "--no-status",
        dest="status",
        action="store_false",
        help="Do not show the live status line",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.logs_dir, verbose=args.verbose)

    # Clamp workers
    threads = args.threads
    if threads < 1:
        logger.warning("--threads %d is below 1, using 1 worker", threads)
        threads = 1

    try:
        summary = run_prober(
            domains_dir=args.domains_dir,
            valid_dir=args.valid_dir,
            invalid_dir=args.invalid_dir,
            threads=threads,
            once=args.once,
            pause=args.pause,
            timeout=args.timeout,
            port=args.port,
            show_status=args.status,
        )
    except KeyboardInterrupt:
        logger.warning("Interrupted, queued domains were drained before exit.")
        sys.exit(130)

    _print_summary(summary)
    if summary["aborted"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
