import argparse
import logging
import sys

from PySide6.QtCore import QCoreApplication, QTimer

from canlens.config import SessionSettings
from canlens.database import load_database
from canlens.drivers.synthetic import SyntheticDriver
from canlens.drivers.vector import default_driver_factory
from canlens.errors import CanLensError
from canlens.logs import configure_logging
from canlens.session import BusSessionController
from canlens.trace.interchange import convert_trace

logger = logging.getLogger("canlens")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="canlens", description="canlens - CAN/CAN-FD trace tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", help="Also write the log to this file")
    sub = parser.add_subparsers(dest="command", required=True)

    monitor = sub.add_parser("monitor", help="Capture bus traffic for a while")
    monitor.add_argument("--dbc", help="Message database used for decoding")
    monitor.add_argument("--seconds", type=float, default=10.0, help="Measurement duration")
    monitor.add_argument("--save", help="Save the trace (.asc, .blf, .log, .trc, or CSV)")
    monitor.add_argument("--in-place", action="store_true", help="One row per frame identity")
    monitor.add_argument("--config", help="Session settings JSON file")
    monitor.add_argument("--demo", action="store_true", help="Use the synthetic driver")

    convert = sub.add_parser("convert", help="Convert a trace file to another format")
    convert.add_argument("source")
    convert.add_argument("destination")
    convert.add_argument("--dbc", help="Message database used for the Name column")
    return parser


def run_monitor(args) -> int:
    settings = SessionSettings.load(args.config) if args.config else SessionSettings()
    if args.in_place:
        settings.in_place_display = True

    app = QCoreApplication.instance() or QCoreApplication(sys.argv)
    factory = SyntheticDriver if args.demo else default_driver_factory
    session = BusSessionController(settings, driver_factory=factory)
    session.error_occurred.connect(lambda message: logger.error("%s", message))

    if args.dbc and not session.load_dbc(args.dbc):
        return 1

    def finish():
        session.flush_pending()
        frames = session.trace.frame_count()
        session.stop_measurement()
        code = 0
        if args.save:
            code = 0 if session.save_trace(args.save) else 1
        session.shutdown()
        logger.info("Captured %d frames", frames)
        app.exit(code)

    def on_initialized(ok: bool):
        if not ok or not session.start_measurement():
            session.shutdown()
            app.exit(1)
            return
        QTimer.singleShot(int(args.seconds * 1000), finish)

    session.initialization_finished.connect(on_initialized)
    QTimer.singleShot(0, session.start_initialization)
    return app.exec()


def run_convert(args) -> int:
    db = load_database(args.dbc) if args.dbc else None
    count = convert_trace(args.source, args.destination, db)
    logger.info("Converted %d frames: %s -> %s", count, args.source, args.destination)
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)
    try:
        if args.command == "monitor":
            return run_monitor(args)
        return run_convert(args)
    except CanLensError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
