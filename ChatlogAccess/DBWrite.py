from sqlite3 import Connection
from pathlib import Path
from base64 import b64decode

SQL_SCRIPTS_PATH = Path(__file__).parent.parent / "SQLScripts"


class ChatlogWriter(Connection):
    """creates a database containing a messaging client's chat history and the
    records for its media, in the layout that ChatlogReader expects.

    records come in as dicts, one at a time, through add_record or one of the more
    specific add_ methods; they're usually streamed out of an export file by
    `ChatlogAccess.JSONStream.ExportStream`. everything is added inside one big
    transaction that finalize() commits. note: does very little type casting or
    checking; sqlite3 is expected to do this based on each column of data's type
    affinity in the schema.

    Attributes:
        added_records: maps each kind of record to the number of records of that kind
            that have been added to the database so far. intended to be used by this
            object's owner for progress reports.
    """

    def __init__(self, db_path, automatic_overwrite=False):
        """creates a database file, initializes it with the sql script that creates
        its tables, and begins our overall sql transaction."""
        db_path = Path(db_path) if "mode=memory" not in str(db_path) else db_path
        if (":memory:" not in str(db_path)) and ("mode=memory" not in str(db_path)):
            if db_path.exists():
                if automatic_overwrite:
                    db_path.unlink()
                    if (prev_journal := Path(str(db_path) + "-journal")).exists():
                        prev_journal.unlink()
                else:
                    raise RuntimeError(f"Database {db_path} already exists")
            db_path.parent.mkdir(parents=True, exist_ok=True)
        super(ChatlogWriter, self).__init__(
            db_path, uri=("mode=memory" in str(db_path))
        )

        # keeps python from automatically creating and ending database transactions
        # so that all of our inserts can be contained in one large one (faster)
        self.isolation_level = None

        with open(SQL_SCRIPTS_PATH / "setup.sql") as setup:
            self.executescript(setup.read())

        self.execute("begin")

        self.added_records = {
            "media": 0,
            "contacts": 0,
            "chatrooms": 0,
            "sessions": 0,
            "messages": 0,
        }

    def add_media(self, media: dict) -> None:
        data = media.get("data")
        if isinstance(data, str):
            data = b64decode(data) if data else None
        self.execute(
            """insert or replace into media
                (type, key, path, name, size, modify_time, data)
                values (?, ?, ?, ?, ?, ?, ?);""",
            (
                media["type"],
                media["key"],
                media.get("path", ""),
                media.get("name", ""),
                media.get("size", len(data) if data else 0),
                media.get("modifyTime", 0),
                data,
            ),
        )
        self.added_records["media"] += 1

    def add_contact(self, contact: dict) -> None:
        self.execute(
            """insert or replace into contacts (user_name, alias, remark, nick_name)
                values (?, ?, ?, ?);""",
            (
                contact["userName"],
                contact.get("alias", ""),
                contact.get("remark", ""),
                contact.get("nickName", ""),
            ),
        )
        self.added_records["contacts"] += 1

    def add_chatroom(self, chatroom: dict) -> None:
        self.execute(
            """insert or replace into chatrooms (name, remark, nick_name, owner)
                values (?, ?, ?, ?);""",
            (
                chatroom["name"],
                chatroom.get("remark", ""),
                chatroom.get("nickName", ""),
                chatroom.get("owner", ""),
            ),
        )
        for member in chatroom.get("users", []):
            self.execute(
                """insert or replace into chatroom_members
                    (chatroom, user_name, display_name) values (?, ?, ?);""",
                (chatroom["name"], member["userName"], member.get("displayName", "")),
            )
        self.added_records["chatrooms"] += 1

    def add_session(self, session: dict) -> None:
        self.execute(
            """insert or replace into sessions
                (user_name, n_order, nick_name, content, n_time)
                values (?, ?, ?, ?, ?);""",
            (
                session["userName"],
                session.get("nOrder", 0),
                session.get("nickName", ""),
                session.get("content", ""),
                session.get("nTime", ""),
            ),
        )
        self.added_records["sessions"] += 1

    def add_message(self, message: dict) -> None:
        """adds a message. `time` must already be in 'YYYY-MM-DD HH:MM:SS' form."""
        self.execute(
            """insert into messages
                (time, talker, talker_name, sender, sender_name, is_self,
                is_chatroom, content, media_type, media_key)
                values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);""",
            (
                message["time"],
                message["talker"],
                message.get("talkerName", ""),
                message["sender"],
                message.get("senderName", ""),
                1 if message.get("isSelf") else 0,
                1 if message.get("isChatRoom") else 0,
                message.get("content", ""),
                message.get("mediaType", ""),
                message.get("mediaKey", ""),
            ),
        )
        self.added_records["messages"] += 1

    def add_record(self, kind: str, record: dict) -> None:
        """one-stop shop for adding any kind of record; `kind` is the name of the
        array the record came from in an export file."""
        adders = {
            "media": self.add_media,
            "contacts": self.add_contact,
            "chatrooms": self.add_chatroom,
            "sessions": self.add_session,
            "messages": self.add_message,
        }
        if kind not in adders:
            raise ValueError(f"unsupported record kind {kind}")
        adders[kind](record)

    @property
    def total_added(self) -> int:
        return sum(self.added_records.values())

    def finalize(self) -> None:
        """commits everything added so far and starts a new transaction so that more
        records can be added afterwards."""
        self.execute("commit")
        self.execute("begin")

    def close(self) -> None:
        if self.in_transaction:
            self.execute("commit")
        super().close()
