from tornado.web import RequestHandler, Application, StaticFileHandler
from tornado.ioloop import IOLoop
from tornado.log import app_log
from ChatlogAccess.DBRead import (
    ChatlogReader,
    DBRow,
    Contact,
    ChatRoom,
    Session,
    Message,
)
from ChatlogAccess.MediaGateway import (
    MediaGateway,
    ResolvedOutcome,
    Metadata,
    InlineBytes,
    Redirect,
    NotFoundOutcome,
)
from ChatlogAccess.errors import ChatlogError, InvalidArgument
from ChatlogAccess.TimeRange import time_range_of, time_format_for
from ChatlogAccess.Analysis import ReportFolder
from ChatlogAccess import Analysis
from datetime import datetime
from functools import partial
from mimetypes import guess_type
from typing import Union, Iterable
from urllib.parse import quote
from pathlib import Path
import csv
import io

CSV_CONTENT_TYPE = "text/csv; charset=utf-8"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"

CSV_HEADERS = {
    Message: ("Time", "TalkerName", "Talker", "SenderName", "Sender", "Content"),
    Contact: ("UserName", "Alias", "Remark", "NickName"),
    ChatRoom: ("Name", "Remark", "NickName", "Owner", "UserCount"),
    Session: ("UserName", "NOrder", "NickName", "Content", "NTime"),
}


class FallbackHandler(RequestHandler):
    """answers every request that no other route picked up. when there's a frontend
    to send people to, anything that isn't an api or asset url is redirected to it;
    otherwise everything gets a json 404."""

    def initialize(self, redirect_home: bool):
        self.redirect_home = redirect_home

    def prepare(self):
        path = self.request.path
        if self.redirect_home and not path.startswith(("/api", "/static")):
            self.set_header(
                "Cache-Control", "no-cache, no-store, max-age=0, must-revalidate"
            )
            self.redirect("/")
        else:
            self.set_status(404)
            self.finish({"error": "Not found"})


class ChatlogAPIServer:

    handlers = []

    def __init__(
        self,
        reader: ChatlogReader,
        gateway: MediaGateway,
        port: int = 5030,
        address: str = "127.0.0.1",
        static_path: Union[Path, None] = None,
        reports_path: Union[Path, None] = None,
    ):
        self.port = port
        self.address = address
        initializer = {
            "reader": reader,
            "gateway": gateway,
            "reports": ReportFolder(reports_path or Path.cwd()),
        }
        routes = [x + (initializer,) for x in self.handlers]
        serve_frontend = bool(static_path) and Path(static_path).is_dir()
        if serve_frontend:
            routes += [
                (r"/static/(.*)", StaticFileHandler, {"path": str(static_path)}),
                (
                    r"/()",
                    StaticFileHandler,
                    {"path": str(static_path), "default_filename": "index.htm"},
                ),
            ]
        routes.append((r"/(.*)", FallbackHandler, {"redirect_home": serve_frontend}))
        self.application = Application(routes, compress_response=True)

    def start(self):
        app_log.info("starting server at http://%s:%d", self.address, self.port)
        self.application.listen(self.port, self.address)
        IOLoop.current().start()


def handles(url):
    def register_handler(handler_class):
        ChatlogAPIServer.handlers.append((url, handler_class))
        return handler_class

    return register_handler


class APIRequestHandler(RequestHandler):
    """abstract base class"""

    def initialize(
        self, reader: ChatlogReader, gateway: MediaGateway, reports: ReportFolder
    ):
        self.db = reader
        self.gateway = gateway
        self.reports = reports

    def in_background(self, function, *args, **kwargs):
        """runs something that reads files, runs programs or crunches through a lot of
        rows on the IOLoop's executor so that other requests keep being served in
        the meantime."""
        return IOLoop.current().run_in_executor(
            None, partial(function, *args, **kwargs)
        )

    @classmethod
    def recursive_serialize(cls, item):
        if isinstance(item, DBRow):
            return item.serialize()
        elif isinstance(item, list):
            return [(x.serialize() if isinstance(x, DBRow) else x) for x in item]
        elif isinstance(item, dict):
            for key in item:
                item[key] = cls.recursive_serialize(item[key])
            return item
        else:
            return item

    @classmethod
    def process_chunk(cls, chunk):
        serialized_chunk = cls.recursive_serialize(chunk)
        if isinstance(chunk, list):
            return {"results": serialized_chunk}
        return serialized_chunk

    def write(self, chunk: Union[str, bytes, dict, DBRow, list, None] = None):
        return super().write(self.process_chunk(chunk))

    def finish(self, chunk: Union[str, bytes, dict, DBRow, list, None] = None):
        return super().finish(self.process_chunk(chunk))

    def write_error(self, status_code: int, **kwargs):
        self.finish({"error": self._reason})

    def fail(self, error: ChatlogError):
        self.set_status(error.status_code)
        self.finish({"error": str(error)})

    def emit(self, outcome: ResolvedOutcome):
        """turns the result of a MediaGateway call into a response."""
        if isinstance(outcome, Metadata):
            self.finish(outcome.record)
        elif isinstance(outcome, InlineBytes):
            self.set_header("Content-Type", outcome.content_type)
            self.finish(outcome.body)
        elif isinstance(outcome, Redirect):
            self.redirect(quote(outcome.location))
        elif isinstance(outcome, NotFoundOutcome):
            self.set_status(404)
            self.finish({"error": "media not found"})
        else:  # pragma: no cover
            raise TypeError(f"unknown media outcome {outcome!r}")

    def arguments(self, *args):
        return tuple(self.get_query_argument(x, None) for x in args)

    def paging(self) -> tuple[int, int]:
        limit, offset = self.arguments("limit", "offset")
        try:
            return max(int(limit or 0), 0), max(int(offset or 0), 0)
        except ValueError as e:
            raise InvalidArgument("limit" if limit else "offset", e)

    def finish_rows(self, rows: list, row_class: type, format: Union[str, None]):
        """sends query results in the requested format. plain text and csv are the
        same thing here apart from the content type; types with their own plain text
        rendering handle that themselves."""
        format = (format or "").lower()
        if format == "json":
            self.finish(rows)
            return
        self.set_header(
            "Content-Type", CSV_CONTENT_TYPE if format == "csv" else TEXT_CONTENT_TYPE
        )
        self.set_header("Cache-Control", "no-cache")
        self.finish(to_csv(CSV_HEADERS[row_class], (x.csv_row() for x in rows)))


def to_csv(header: tuple, rows: Iterable[tuple]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


@handles(r"/(image|video|file|voice)/(.*)")
class Media(APIRequestHandler):
    async def get(self, category, key):
        try:
            outcome = await self.in_background(
                self.gateway.resolve,
                category,
                key,
                info_only=bool(self.get_query_argument("info", "")),
            )
        except ChatlogError as e:
            self.fail(e)
            return
        self.emit(outcome)


@handles(r"/data/(.*)")
class MediaData(APIRequestHandler):
    async def get(self, path):
        try:
            outcome = await self.in_background(self.gateway.resolve_data, path)
        except ChatlogError as e:
            self.fail(e)
            return
        self.emit(outcome)


@handles(r"/api/v1/chatlog")
class Chatlog(APIRequestHandler):
    def get(self):
        time, talker, sender, keyword, format = self.arguments(
            "time", "talker", "sender", "keyword", "format"
        )
        try:
            limit, offset = self.paging()
            start, end = time_range_of(time)
            messages = self.db.get_messages(
                start, end, talker, sender, keyword, limit, offset
            )
        except ChatlogError as e:
            self.fail(e)
            return

        format = (format or "").lower()
        if format in ("json", "csv"):
            self.finish_rows(messages, Message, format)
            return
        show_talker = "," in (talker or "")
        time_format = time_format_for(start, end)
        self.set_header("Content-Type", TEXT_CONTENT_TYPE)
        self.set_header("Cache-Control", "no-cache")
        self.finish(
            "\n".join(
                x.plain_text(show_talker, time_format, self.request.host)
                for x in messages
            )
        )


@handles(r"/api/v1/contact")
class Contacts(APIRequestHandler):
    def get(self):
        keyword, format = self.arguments("keyword", "format")
        try:
            limit, offset = self.paging()
            contacts = self.db.get_contacts(keyword, limit, offset)
        except ChatlogError as e:
            self.fail(e)
            return
        self.finish_rows(contacts, Contact, format)


@handles(r"/api/v1/chatroom")
class ChatRooms(APIRequestHandler):
    def get(self):
        keyword, format = self.arguments("keyword", "format")
        try:
            limit, offset = self.paging()
            chatrooms = self.db.get_chatrooms(keyword, limit, offset)
        except ChatlogError as e:
            self.fail(e)
            return
        self.finish_rows(chatrooms, ChatRoom, format)


@handles(r"/api/v1/session")
class Sessions(APIRequestHandler):
    def get(self):
        keyword, format = self.arguments("keyword", "format")
        try:
            limit, offset = self.paging()
            sessions = self.db.get_sessions(keyword, limit, offset)
        except ChatlogError as e:
            self.fail(e)
            return
        if (format or "").lower() in ("json", "csv"):
            self.finish_rows(sessions, Session, format)
            return
        self.set_header("Content-Type", TEXT_CONTENT_TYPE)
        self.set_header("Cache-Control", "no-cache")
        self.finish("\n".join(x.plain_text() for x in sessions))


EXPORTS = {
    "sessions": (Session, "get_sessions"),
    "contacts": (Contact, "get_contacts"),
    "chatrooms": (ChatRoom, "get_chatrooms"),
}


class AnalysisHandler(APIRequestHandler):
    """base class for the /api/v1/analysis/ endpoints, which all boil down to
    running one function from ChatlogAccess.Analysis in the background and sending
    back what it returns."""

    async def answer(self, function, *args):
        try:
            result = await self.in_background(function, *args)
        except ChatlogError as e:
            self.fail(e)
            return
        self.finish(result)


@handles(r"/api/v1/analysis/stats")
class AnalysisStats(AnalysisHandler):
    async def get(self):
        await self.answer(Analysis.stats, self.db, datetime.now())


@handles(r"/api/v1/analysis/search")
class AnalysisSearch(AnalysisHandler):
    async def get(self):
        keyword, days = self.arguments("keyword", "days")
        await self.answer(
            Analysis.search,
            self.db,
            keyword,
            Analysis.days_argument(days, Analysis.SEARCH_DAYS),
            datetime.now(),
        )


@handles(r"/api/v1/analysis/chatroom")
class AnalysisChatroom(AnalysisHandler):
    async def get(self):
        talker, days = self.arguments("talker", "days")
        await self.answer(
            Analysis.chatroom_history,
            self.db,
            talker,
            Analysis.days_argument(days, Analysis.HISTORY_DAYS),
            datetime.now(),
        )


@handles(r"/api/v1/analysis/daily-summary")
class AnalysisDailySummary(AnalysisHandler):
    async def get(self):
        date, talker = self.arguments("date", "talker")
        await self.answer(
            Analysis.daily_summary, self.db, date, talker or "", datetime.now()
        )


@handles(r"/api/v1/analysis/golden-quotes")
class AnalysisGoldenQuotes(AnalysisHandler):
    async def get(self):
        date, talker = self.arguments("date", "talker")
        await self.answer(
            Analysis.golden_quotes, self.db, date, talker or "", datetime.now()
        )


@handles(r"/api/v1/analysis/report")
class AnalysisReport(AnalysisHandler):
    async def get(self):
        await self.answer(self.reports.latest_report)


@handles(r"/api/v1/analysis/files")
class AnalysisFiles(AnalysisHandler):
    async def get(self):
        try:
            files = await self.in_background(self.reports.files)
        except OSError as e:
            self.fail(ChatlogError("Failed to list analysis files", e))
            return
        self.finish({"files": files})


@handles(r"/api/v1/analysis/export")
class AnalysisExport(APIRequestHandler):
    def get(self):
        kind = self.get_query_argument("type", "")
        if kind not in EXPORTS:
            self.set_status(400)
            self.finish({"error": "Invalid export type"})
            return
        row_class, getter = EXPORTS[kind]
        try:
            rows = getattr(self.db, getter)()
        except ChatlogError as e:
            self.fail(e)
            return
        self.set_header("Content-Type", CSV_CONTENT_TYPE)
        self.set_header(
            "Content-Disposition", f"attachment; filename={kind}_export.csv"
        )
        self.finish(to_csv(CSV_HEADERS[row_class], (x.csv_row() for x in rows)))


@handles(r"/api/v1/analysis/download")
class AnalysisDownload(APIRequestHandler):
    """sends a report file as an attachment. export folders can be looked up but not
    downloaded; there's no archive format to send them in."""

    async def get(self):
        file, folder = self.arguments("file", "folder")
        try:
            if file:
                location = self.reports.report(file)
                content = await self.in_background(location.read_bytes)
            elif folder:
                location = self.reports.export(folder)
                self.finish(
                    {
                        "message": "Folder download not implemented yet",
                        "folder": location.name,
                    }
                )
                return
            else:
                self.set_status(400)
                self.finish({"error": "No file or folder specified"})
                return
        except ChatlogError as e:
            self.fail(e)
            return
        self.set_header(
            "Content-Type", guess_type(location.name)[0] or "application/octet-stream"
        )
        self.set_header(
            "Content-Disposition", f"attachment; filename={location.name}"
        )
        self.finish(content)
