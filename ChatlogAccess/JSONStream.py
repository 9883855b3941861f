import ijson
from os import PathLike
from typing import Final

EXPORT_KINDS: Final = ("contacts", "chatrooms", "sessions", "media", "messages")


class PrefixedJSON:
    """takes a file that may assign its json-formatted data to a variable (like
    `window.chatlog = {...}`) and skips past the assignment so that the file can be
    used as pure json. compatible with the json and ijson modules.

    Attributes:
        filename: name/path of the file we're using.

    How to use:
        >>> with PrefixedJSON("export.json") as json_file:
        >>>     parser = ijson.parse(json_file)
    """

    def __init__(self, file: PathLike):
        self.filename = file

    def __enter__(self):
        """prepares a file to be read as json.

        opens a file in bytes mode (for ijson compatibility/optimization purposes),
        reads data from it until it finds a character that can act as the start of
        some json data, then seeks backwards one byte so that that character is the
        next one that will be read.

        Returns:
            a prepared file object.
        """
        self.file = open(self.filename, "rb")
        byte = self.file.read(1)
        while byte not in (b"[", b"{"):
            if not byte:
                self.file.close()
                raise ValueError(f"no json data found in {self.filename}")
            byte = self.file.read(1)
        self.file.seek(-1, 1)
        return self.file

    def __exit__(self, exc_type, exc_value, exc_traceback):
        self.file.close()


class ExportStream:
    """turns one of the arrays in a chat history export file into an iterable stream
    of dicts, without loading the whole file into memory.

    an export file is a json object with up to five arrays in it, named after the
    EXPORT_KINDS; each array holds records in the form that
    `ChatlogAccess.DBWrite.ChatlogWriter.add_record` accepts.

    Attributes:
        path: path to the export file.
        kind: which array to read.
        bytes_read: how far into the file the parser has gotten.
        bytes_total: the size of the file.

    How to use:
        >>> for contact in ExportStream("export.json", "contacts"):
        >>>     save_in_database(contact)
    """

    def __init__(self, path: PathLike, kind: str):
        if kind not in EXPORT_KINDS:
            raise ValueError(f"unsupported record kind {kind}")
        self.path = path
        self.kind = kind
        self.bytes_read = 0
        with PrefixedJSON(self.path) as temp:
            temp.seek(0, 2)
            self.bytes_total = temp.tell()

    @property
    def percentage(self):
        "simplest way to see how much of the current file has been read"
        if not self.bytes_total:
            return 100
        return self.bytes_read / self.bytes_total * 100

    def __iter__(self):
        with PrefixedJSON(self.path) as json_file:
            # use_float keeps non-integer numbers out of Decimal
            for record in ijson.items(json_file, self.kind + ".item", use_float=True):
                self.bytes_read = json_file.tell()
                yield record
            self.bytes_read = self.bytes_total
