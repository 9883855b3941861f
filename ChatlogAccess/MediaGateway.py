"""Turns media keys into bytes.

A media key, as it appears in message records and in the `/image/`, `/video/`,
`/file/` and `/voice/` urls, is a comma-separated list of candidates; the first
candidate that leads somewhere wins. 32-character candidates are content hashes that
are looked up in the chat database; anything else is a path relative to the data
root. Nothing in here knows about HTTP: every operation returns one of the outcome
classes below (or raises a `ChatlogAccess.errors.ChatlogError`), and
`ChatlogAccess.APIServer` turns those into responses.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from mimetypes import guess_type
from pathlib import Path
from os import PathLike
from typing import Final, Union, Protocol, Any, Callable

from tornado.log import app_log

from ChatlogAccess.errors import (
    ErrorAggregator,
    InvalidArgument,
    NotFound,
    StoreFailure,
    DecodeError,
    TranscodeError,
)

MEDIA_TYPES: Final = ("image", "video", "file", "voice")
HASH_LENGTH: Final = 32
CONTAINER_EXTENSION: Final = ".dat"
DATA_URL: Final = "/data/"

DECODED_CONTENT_TYPES: Final = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "bmp": "image/bmp",
}
DEFAULT_DECODED_CONTENT_TYPE: Final = "image/jpg"
DEFAULT_CONTENT_TYPE: Final = "application/octet-stream"


class MediaLookup(Protocol):
    def get_media(self, category: str, key: str) -> Any:
        """returns a record with `type`, `path` and `data` attributes or raises
        StoreFailure."""


class ContainerDecoder(Protocol):
    def decode(self, data: bytes) -> tuple[bytes, str]:
        """returns the decoded image and its extension or raises DecodeError."""


class VoiceTranscoder(Protocol):
    def transcode(self, data: bytes) -> bytes:
        """returns mp3 audio or raises TranscodeError."""


@dataclass(frozen=True)
class Metadata:
    record: Any


@dataclass(frozen=True)
class InlineBytes:
    content_type: str
    body: bytes


@dataclass(frozen=True)
class Redirect:
    path: str

    @property
    def location(self) -> str:
        return DATA_URL + self.path


@dataclass(frozen=True)
class NotFoundOutcome:
    pass


ResolvedOutcome = Union[Metadata, InlineBytes, Redirect, NotFoundOutcome]


def split_key(raw_key: str) -> list[str]:
    """splits a media key into its candidates, dropping empty ones. a single
    leading slash (left over from the url) is ignored."""
    if raw_key.startswith("/"):
        raw_key = raw_key[1:]
    return [x.strip() for x in raw_key.split(",") if x.strip()]


def is_hash_candidate(candidate: str) -> bool:
    return len(candidate) == HASH_LENGTH


def normalize_relative_path(relative_path: str) -> str:
    """collapses `.` and `..` segments as though the path started at the root of the
    filesystem, so that the result can never climb above whatever it is joined to.
    the result has no leading slash and may be empty."""
    rooted = posixpath.normpath("/" + relative_path.replace("\\", "/"))
    return rooted.lstrip("/")


def is_present(location: Path, check: Callable[[Path], bool] = Path.exists) -> bool:
    """runs a filesystem check, counting anything the OS refuses to answer (a name
    that's too long, a permission problem) as the file not being there."""
    try:
        return check(location)
    except OSError as e:
        app_log.debug("treating %s as missing: %s", location, e)
        return False


class MediaGateway:
    """Resolves media keys and data paths against a chat database and a data
    directory.

    Attributes:
        data_dir: the directory that every relative path is resolved against.
        store: anything with a `get_media(category, key)` method, usually an
            `ChatlogAccess.DBRead.ChatlogReader`.
        decoder: container decoder used for `.dat` files under the data root.
        transcoder: voice transcoder used for inline voice payloads.
    """

    def __init__(
        self,
        data_dir: PathLike,
        store: MediaLookup,
        decoder: ContainerDecoder,
        transcoder: VoiceTranscoder,
    ):
        self.data_dir = Path(data_dir)
        self.store = store
        self.decoder = decoder
        self.transcoder = transcoder

    def locate(self, relative_path: str) -> Path:
        """returns the absolute location of a relative path under the data root."""
        normalized = normalize_relative_path(relative_path)
        return self.data_dir / normalized if normalized else self.data_dir

    def resolve(
        self,
        category: str,
        raw_key: str,
        info_only: bool = False,
        errors: Union[ErrorAggregator, None] = None,
    ) -> ResolvedOutcome:
        """Works through the candidates in a media key in order and returns the
        outcome for the first one that resolves.

        Path candidates that don't exist on disk are skipped without a trace; hash
        candidates that the store can't find have their error recorded in `errors`
        and are skipped too. If nothing resolves, the last recorded error is raised,
        or, if nothing was recorded, a NotFoundOutcome is returned.

        Arguments:
            category: one of MEDIA_TYPES; passed on to the store.
            raw_key: the key as it appeared in the url.
            info_only: return the store's record instead of its content.
            errors: optional aggregator to record swallowed failures in; useful for
                callers that want to see them after a successful resolution.
        """
        if category not in MEDIA_TYPES:
            raise InvalidArgument(category)
        candidates = split_key(raw_key)
        if not candidates:
            raise InvalidArgument(raw_key)
        if errors is None:
            errors = ErrorAggregator()

        for candidate in candidates:
            if not is_hash_candidate(candidate):
                if not is_present(self.locate(candidate)):
                    continue
                return Redirect(candidate)

            try:
                record = self.store.get_media(category, candidate)
            except StoreFailure as e:
                app_log.debug("lookup of %s %s failed: %s", category, candidate, e)
                errors.record(e)
                continue

            if info_only:
                return Metadata(record)
            if record.type == "voice":
                return self.resolve_voice(record.data)
            return Redirect(record.path)

        errors.raise_if_any()
        return NotFoundOutcome()

    def resolve_data(self, relative_path: str) -> InlineBytes:
        """Reads a file under the data root. `.dat` containers are decoded into
        standard images when the decoder recognizes them and passed through as-is
        otherwise."""
        location = self.locate(relative_path)
        if not is_present(location, Path.is_file):
            raise NotFound("File not found")

        content = location.read_bytes()
        if location.suffix.lower() == CONTAINER_EXTENSION:
            try:
                decoded, extension = self.decoder.decode(content)
            except DecodeError as e:
                app_log.debug("passing %s through undecoded: %s", location, e)
            else:
                return InlineBytes(
                    DECODED_CONTENT_TYPES.get(extension, DEFAULT_DECODED_CONTENT_TYPE),
                    decoded,
                )

        return InlineBytes(
            guess_type(location.name)[0] or DEFAULT_CONTENT_TYPE, content
        )

    def resolve_voice(self, data: Union[bytes, None]) -> InlineBytes:
        """Transcodes a voice payload to mp3, falling back to the untouched silk
        payload."""
        data = data or b""
        try:
            return InlineBytes("audio/mp3", self.transcoder.transcode(data))
        except TranscodeError as e:
            app_log.warning("serving voice as silk: %s", e)
            return InlineBytes("audio/silk", data)
