import argparse
import logging
import threading

from .config import DEFAULT_MATCH_SETTINGS, LOCK_BACKEND, LOG_LEVEL
from .database import Base, SessionLocal, engine
from .services.locks import build_user_locks
from .services.matchmaking import Matchmaker

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs the matchmaker sweep on a fixed interval in a daemon thread."""

    def __init__(self, matchmaker: Matchmaker, interval_seconds: float, retry_matching: bool = True) -> None:
        self.matchmaker = matchmaker
        self.interval_seconds = interval_seconds
        self.retry_matching = retry_matching
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self):
        try:
            return self.matchmaker.sweep(retry_matching=self.retry_matching)
        except Exception:
            logger.exception("[SWEEP] sweep run failed")
            return None

    def run_forever(self) -> None:
        logger.info("[SWEEP] scheduler started interval=%ss", self.interval_seconds)
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_seconds)
        logger.info("[SWEEP] scheduler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="spinmatch-sweep", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def build_matchmaker() -> Matchmaker:
    return Matchmaker(SessionLocal, build_user_locks(LOCK_BACKEND, engine), DEFAULT_MATCH_SETTINGS)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the Spin Match timeout sweep")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=DEFAULT_MATCH_SETTINGS.sweep_interval_seconds)
    parser.add_argument("--no-retry-matching", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    Base.metadata.create_all(bind=engine)
    matchmaker = build_matchmaker()

    if args.once:
        report = matchmaker.sweep(retry_matching=not args.no_retry_matching)
        print("Sweep completed")
        for k, v in report.as_dict().items():
            print(f"- {k}: {v}")
        return

    scheduler = SweepScheduler(matchmaker, args.interval, retry_matching=not args.no_retry_matching)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        scheduler.stop()


if __name__ == "__main__":
    main()
