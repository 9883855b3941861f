from __future__ import annotations

import sqlite3
from base64 import b64encode
from datetime import datetime
from typing import Union, Final, ClassVar
from collections.abc import Callable, Iterator
from dataclasses import dataclass, asdict
from os import PathLike
from contextlib import contextmanager

from ChatlogAccess.errors import StoreFailure, MediaNotFound
from ChatlogAccess.TimeRange import DB_TIME_FORMAT

SESSION_PREVIEW_LENGTH: Final = 120

# message types that come with a media key, and how they're rendered in plain text
MEDIA_LINK_LABELS: Final = {
    "image": "![image]",
    "video": "[video]",
    "file": "[file]",
    "voice": "[voice]",
}


def cursor_with_rows(
    connection: sqlite3.Connection, row_factory: Callable
) -> sqlite3.Cursor:
    """Returns a new cursor on `connection` that builds its rows with `row_factory`.
    The connection's own row factory is left alone, so requests running on
    different threads can't switch it out from under each other.

    Can be used just like this:

    >>> cursor = cursor_with_rows(my_connection, Contact.from_row)
    >>> return cursor.execute("select * from contacts;").fetchall()
    """
    cursor = connection.cursor()
    cursor.row_factory = row_factory
    return cursor


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """re-raises anything sqlite3 complains about as a StoreFailure."""
    try:
        yield
    except sqlite3.Error as e:
        raise StoreFailure(f"could not {action}: {e}", e)


class WhereClause:
    """stupid-simple class for accumulating boolean expressions in sql as strings
    that concatenates them together with 'and's when formatted as a string."""

    def __init__(self):
        self.conditions = []

    def add(self, condition: str) -> None:
        if clean := condition.strip():
            self.conditions.append(clean)

    def __format__(self, params) -> str:
        if len(self.conditions):
            return "where " + " and ".join(f"({x})" for x in self.conditions)
        else:
            return ""


def keyword_clause(where: WhereClause, fields: tuple, keyword: str) -> list[str]:
    """adds a condition matching `keyword` against any of `fields` to a WhereClause
    and returns the placeholder values it needs."""
    if not keyword:
        return []
    where.add(" or ".join(f"{x} like ?" for x in fields))
    return [f"%{keyword}%"] * len(fields)


def paging(limit: int, offset: int) -> tuple[int, int]:
    """clamps limit and offset to sqlite's expectations; a limit of 0 means no
    limit."""
    limit = max(int(limit or 0), 0)
    offset = max(int(offset or 0), 0)
    return (limit if limit else -1), offset


@dataclass(frozen=True)
class DBRow:

    """base class for dataclasses that store information taken from a database row.
    subclasses of this store some data in a form friendly to the API, store the
    select statement that will retrieve the data to construct this kind of object,
    and contain a factory method that can be called as a sqlite3 row factory function
    to construct an object of this type."""

    db_select = "select 1 from sqlite_master"
    csv_header: ClassVar = ()

    def serialize(self) -> dict:
        return asdict(self) | {"schema": type(self).__name__}

    def csv_row(self) -> tuple:
        return tuple(getattr(self, x) for x in self.csv_header)

    @classmethod
    def from_row(cls, cursor: sqlite3.Cursor, row: tuple):
        return cls(*row)


@dataclass(frozen=True)
class MediaRecord(DBRow):
    """a media record as the messaging client files it. `path` is relative to the
    data root; `data` holds the payload itself and is only filled in for voice
    messages, which the client keeps in its database instead of on disk."""

    db_select: ClassVar = (
        "select type, key, path, name, size, modify_time, data from media"
    )

    type: str
    key: str
    path: str
    name: str
    size: int
    modify_time: int
    data: Union[bytes, None]

    def serialize(self) -> dict:
        return super().serialize() | {
            "data": b64encode(self.data).decode("ascii") if self.data else ""
        }

    @classmethod
    def from_row(cls, cursor: sqlite3.Cursor, row: tuple) -> MediaRecord:
        return cls(
            row[0],
            row[1],
            row[2] or "",
            row[3] or "",
            row[4] or 0,
            row[5] or 0,
            bytes(row[6]) if row[6] is not None else None,
        )


@dataclass(frozen=True)
class Contact(DBRow):
    db_select: ClassVar = "select user_name, alias, remark, nick_name from contacts"
    csv_header: ClassVar = ("user_name", "alias", "remark", "nick_name")
    search_fields: ClassVar = csv_header

    user_name: str
    alias: str
    remark: str
    nick_name: str


@dataclass(frozen=True)
class ChatRoom(DBRow):
    db_select: ClassVar = """select name, remark, nick_name, owner,
        (select count(*) from chatroom_members where chatroom=chatrooms.name)
        from chatrooms"""
    csv_header: ClassVar = ("name", "remark", "nick_name", "owner", "user_count")
    search_fields: ClassVar = ("name", "remark", "nick_name")

    name: str
    remark: str
    nick_name: str
    owner: str
    user_count: int


@dataclass(frozen=True)
class Session(DBRow):
    db_select: ClassVar = (
        "select user_name, n_order, nick_name, content, n_time from sessions"
    )
    csv_header: ClassVar = ("user_name", "n_order", "nick_name", "content", "n_time")
    search_fields: ClassVar = ("user_name", "nick_name")

    user_name: str
    n_order: int
    nick_name: str
    content: str
    n_time: str

    def csv_row(self) -> tuple:
        return (
            self.user_name,
            self.n_order,
            self.nick_name,
            self.content.replace("\n", "\\n"),
            self.n_time,
        )

    def plain_text(self, limit: int = SESSION_PREVIEW_LENGTH) -> str:
        content = self.content
        if len(content) > limit:
            content = content[:limit] + "..."
        name = self.user_name
        if self.nick_name:
            name = f"{self.nick_name}({self.user_name})"
        return f"{name} {self.n_time}\n{content}\n"


@dataclass(frozen=True)
class Message(DBRow):
    db_select: ClassVar = """select id, time, talker, talker_name, sender,
        sender_name, is_self, is_chatroom, content, media_type, media_key
        from messages"""
    csv_header: ClassVar = (
        "time",
        "talker_name",
        "talker",
        "sender_name",
        "sender",
        "content",
    )

    id: int
    time: str
    talker: str
    talker_name: str
    sender: str
    sender_name: str
    is_self: bool
    is_chatroom: bool
    content: str
    media_type: str
    media_key: str

    def media_link(self, host: str) -> str:
        """returns a link to this message's media on this server, or an empty string
        for messages without any."""
        if self.media_type not in MEDIA_LINK_LABELS or not self.media_key:
            return ""
        return (
            f"{MEDIA_LINK_LABELS[self.media_type]}"
            f"(http://{host}/{self.media_type}/{self.media_key})"
        )

    def plain_text(self, show_talker: bool, time_format: str, host: str) -> str:
        sent = datetime.strptime(self.time, DB_TIME_FORMAT).strftime(time_format)
        header = f"{self.sender_name or self.sender}({self.sender}) {sent}"
        if show_talker:
            header = f"[{self.talker_name or self.talker}] " + header
        body = self.media_link(host) if host else ""
        if self.content:
            body = f"{body}\n{self.content}" if body else self.content
        return f"{header}\n{body}\n"

    @classmethod
    def from_row(cls, cursor: sqlite3.Cursor, row: tuple) -> Message:
        return cls(
            row[0],
            row[1],
            row[2],
            row[3] or "",
            row[4],
            row[5] or "",
            bool(row[6]),
            bool(row[7]),
            row[8] or "",
            row[9] or "",
            row[10] or "",
        )


class ChatlogReader(sqlite3.Connection):
    """Provides an interface between the server that will create the API endpoints
    and the database. Also serves as the media store for
    `ChatlogAccess.MediaGateway.MediaGateway`."""

    def __init__(self, db_path: PathLike):
        """Takes in the path to a database created by DBWrite and opens it for
        querying. Media lookups run on the server's executor threads while the
        queries run on the IOLoop thread, so the connection isn't tied to the thread
        that opened it."""
        super(ChatlogReader, self).__init__(
            db_path, uri=("mode=memory" in str(db_path)), check_same_thread=False
        )
        self.row_factory = sqlite3.Row

    def get_media(self, category: str, key: str) -> MediaRecord:
        """Looks up a media record by its type and content hash. Raises
        MediaNotFound if there isn't one and StoreFailure if the database can't be
        read."""
        with store_errors("look up media"):
            record = cursor_with_rows(self, MediaRecord.from_row).execute(
                MediaRecord.db_select + " where type=? and key=?;", (category, key)
            ).fetchone()
        if record is None:
            raise MediaNotFound(category, key)
        return record

    def _get_rows(
        self,
        row_class: type,
        keyword: str,
        order_by: str,
        limit: int,
        offset: int,
    ) -> list:
        where = WhereClause()
        placeholders = keyword_clause(where, row_class.search_fields, keyword)
        placeholders += paging(limit, offset)
        with store_errors("read " + row_class.__name__.lower() + "s"):
            return cursor_with_rows(self, row_class.from_row).execute(
                f"{row_class.db_select} {where} {order_by} limit ? offset ?;",
                placeholders,
            ).fetchall()

    def get_contacts(self, keyword: str = "", limit: int = 0, offset: int = 0):
        return self._get_rows(Contact, keyword, "order by user_name", limit, offset)

    def get_chatrooms(self, keyword: str = "", limit: int = 0, offset: int = 0):
        return self._get_rows(ChatRoom, keyword, "order by name", limit, offset)

    def get_sessions(self, keyword: str = "", limit: int = 0, offset: int = 0):
        return self._get_rows(
            Session, keyword, "order by n_order desc, user_name", limit, offset
        )

    def get_messages(
        self,
        start: Union[datetime, None] = None,
        end: Union[datetime, None] = None,
        talker: str = "",
        sender: str = "",
        keyword: str = "",
        limit: int = 0,
        offset: int = 0,
    ) -> list[Message]:
        """Retrieves messages in chronological order.

        Arguments:
            start, end: inclusive time bounds; either can be None for no bound.
            talker: the conversation (contact user name or chat room name) the
                messages belong to. several can be given separated by commas.
            sender: only include messages sent by this user name.
            keyword: only include messages whose content contains this,
                case-insensitively.
            limit, offset: paging; a limit of 0 returns everything.
        """
        where = WhereClause()
        placeholders = []
        if start:
            where.add("time >= ?")
            placeholders.append(start.strftime(DB_TIME_FORMAT))
        if end:
            where.add("time <= ?")
            placeholders.append(end.strftime(DB_TIME_FORMAT))
        if talkers := [x.strip() for x in (talker or "").split(",") if x.strip()]:
            where.add(f"talker in ({', '.join('?' for _ in talkers)})")
            placeholders += talkers
        if sender:
            where.add("sender=?")
            placeholders.append(sender)
        placeholders += keyword_clause(where, ("content",), keyword)
        placeholders += paging(limit, offset)
        with store_errors("read messages"):
            return cursor_with_rows(self, Message.from_row).execute(
                f"{Message.db_select} {where} order by time, id limit ? offset ?;",
                placeholders,
            ).fetchall()
