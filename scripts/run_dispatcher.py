from __future__ import annotations

import argparse
import logging
import signal
import threading

from services.ami.app.db.database import db_session
from services.ami.app.db.init_db import init_db
from services.ami.app.services.dispatcher import Dispatcher
from services.ami.app.services.meter_channel_factory import get_meter_channel
from services.ami.app.services.settings import DispatchSettings


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the AMI command dispatcher worker")
    parser.add_argument("--worker-id", default=None)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    init_db()

    stop = threading.Event()

    def _stop(signum, frame) -> None:
        del frame
        logging.getLogger(__name__).info("command.dispatch.signal signum=%s", signum)
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    with Dispatcher(
        db_session,
        get_meter_channel(),
        DispatchSettings.from_env(),
        worker_id=args.worker_id,
    ) as dispatcher:
        if args.once:
            dispatcher.recover_stale_claims()
            summary = dispatcher.run_once()
            print(
                f"claimed={summary.claimed} acked={summary.acked} retried={summary.retried} "
                f"dead_lettered={summary.dead_lettered} failed={summary.failed}"
            )
            return 0

        dispatcher.run_forever(stop)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
