from ChatlogAccess.JSONStream import ExportStream, EXPORT_KINDS
from ChatlogAccess.DBWrite import ChatlogWriter
from ChatlogAccess.DBRead import ChatlogReader
from ChatlogAccess.MediaGateway import MediaGateway
from ChatlogAccess.Dat2Image import Dat2Image
from ChatlogAccess.Silk import SilkTranscoder
from ChatlogAccess.APIServer import ChatlogAPIServer
from tornado.log import enable_pretty_logging, app_log
from tornado.options import options
from pathlib import Path
import sys
import argparse
import traceback


def import_export(export_path: Path, db_path: Path, overwrite: bool) -> Path:
    """creates the database at db_path from an export file, unless it's already there
    and we weren't asked to overwrite it."""
    if db_path.exists() and not overwrite:
        print("found database " + str(db_path))
        return db_path

    db_store = ChatlogWriter(db_path, automatic_overwrite=overwrite)
    try:
        for kind in EXPORT_KINDS:
            print(f"importing {kind} from {export_path}")
            for record in (s := ExportStream(export_path, kind)):
                db_store.add_record(kind, record)
                if db_store.added_records[kind] % 1000 == 0:
                    print(
                        f"\r{db_store.added_records[kind]:,} {kind} added; "
                        + f"{s.percentage:.2f}% of the way through the file",
                        end="",
                    )
            print(f"\r{db_store.added_records[kind]:,} {kind} added")
        db_store.finalize()
    except Exception:
        traceback.print_exc()
        print("was not able to import the export file :(")
        db_store.close()
        db_path.unlink()
        sys.exit(1)

    db_store.close()
    print("database created at " + str(db_path))
    return db_path


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Serve a messaging client's chat history and media over HTTP. "
        "Media keys from the chat history are resolved against the client's data "
        "folder; images in the client's .dat container are decoded and voice "
        "messages are transcoded to mp3 on the fly."
    )
    parser.add_argument(
        "data_dir",
        help="The messaging client's data folder. Every relative media path is "
        "resolved inside this folder, and nothing outside of it is ever served.",
    )
    parser.add_argument(
        "-d",
        "--db",
        default=str(Path.cwd() / "db" / "chatlog.db"),
        help="Path of the chat history database. Defaults to db/chatlog.db in this "
        "directory.",
    )
    parser.add_argument(
        "-e",
        "--export",
        help="A JSON export of the chat history to build the database from. Only "
        "used when the database doesn't exist yet or --overwrite is given.",
    )
    parser.add_argument(
        "-o",
        "--overwrite",
        action="store_true",
        help="Rebuild the database from --export even if it already exists.",
    )
    parser.add_argument(
        "-s",
        "--static",
        help="A folder of frontend assets to serve at / and /static/. If this is "
        "left out, only the media and API endpoints are available.",
    )
    parser.add_argument(
        "-r",
        "--reports",
        default=str(Path.cwd()),
        help="Folder that analysis reports (chatlog_report_*.json) and exports "
        "(chatlog_export_*) are read from. Defaults to this directory.",
    )
    parser.add_argument("-a", "--address", default="127.0.0.1")
    parser.add_argument("-po", "--port", type=int, default=5030)
    parser.add_argument(
        "--silk-decoder",
        default="silk_v3_decoder",
        help="Name or path of the silk_v3_decoder program used for voice messages.",
    )
    parser.add_argument(
        "--ffmpeg",
        default="ffmpeg",
        help="Name or path of the ffmpeg program used for voice messages.",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    options.logging = "debug" if args.verbose else "info"
    enable_pretty_logging()

    db_path = Path(args.db)
    if args.export:
        import_export(Path(args.export), db_path, args.overwrite)
    elif not db_path.exists():
        parser.error(f"no database at {db_path}; pass --export to create one")

    data_dir = Path(args.data_dir)
    if not data_dir.is_dir():
        parser.error(f"{data_dir} is not a folder")

    reader = ChatlogReader(db_path)
    gateway = MediaGateway(
        data_dir,
        reader,
        Dat2Image(),
        SilkTranscoder(decoder=args.silk_decoder, ffmpeg=args.ffmpeg),
    )
    server = ChatlogAPIServer(
        reader,
        gateway,
        port=args.port,
        address=args.address,
        static_path=Path(args.static) if args.static else None,
        reports_path=Path(args.reports),
    )
    app_log.info("serving media from %s", data_dir)
    server.start()
