"""these tests check that MediaGateway.resolve_data serves files from inside the data
root only, and that .dat containers are decoded when possible and passed through
when not."""

from ChatlogAccess.MediaGateway import (
    MediaGateway,
    InlineBytes,
    normalize_relative_path,
    DEFAULT_CONTENT_TYPE,
)
from ChatlogAccess.Dat2Image import Dat2Image
from ChatlogAccess.errors import NotFound
from tests.chatlog_utils import (
    FakeStore,
    FakeDecoder,
    FakeTranscoder,
    xor_container,
    PNG_BYTES,
)
from mimetypes import guess_type
from pytest import fixture, raises, mark


@fixture
def data_dir(tmp_path):
    root = tmp_path / "data"
    (root / "msg" / "attach").mkdir(parents=True)
    (root / "msg" / "video").mkdir(parents=True)
    (root / "msg" / "attach" / "photo.dat").write_bytes(xor_container(PNG_BYTES))
    (root / "msg" / "attach" / "LOUD.DAT").write_bytes(xor_container(PNG_BYTES, 0x21))
    (root / "msg" / "attach" / "junk.dat").write_bytes(b"not an image at all")
    (root / "msg" / "video" / "clip.mp4").write_bytes(b"\x00\x00\x00\x18ftypmp42")
    (tmp_path / "secret.txt").write_text("outside the data root")
    return root


@fixture
def gateway(data_dir):
    return MediaGateway(data_dir, FakeStore(), Dat2Image(), FakeTranscoder())


@mark.parametrize(
    "path, expected",
    [
        ("a/b.jpg", "a/b.jpg"),
        ("/a/./b.jpg", "a/b.jpg"),
        ("a/../b.jpg", "b.jpg"),
        ("../../etc/passwd", "etc/passwd"),
        ("a\\..\\..\\b.jpg", "b.jpg"),
        ("..", ""),
    ],
)
def test_normalize_relative_path(path, expected):
    assert normalize_relative_path(path) == expected


def test_plain_file_is_served_with_guessed_type(gateway):
    outcome = gateway.resolve_data("msg/video/clip.mp4")
    assert outcome == InlineBytes("video/mp4", b"\x00\x00\x00\x18ftypmp42")


def test_missing_file(gateway):
    with raises(NotFound) as e:
        gateway.resolve_data("msg/video/nope.mp4")
    assert e.value.status_code == 404


def test_directories_are_not_served(gateway):
    with raises(NotFound):
        gateway.resolve_data("msg/video")
    with raises(NotFound):
        gateway.resolve_data("")


@mark.parametrize("path", ["../secret.txt", "msg/../../secret.txt", "/../secret.txt"])
def test_traversal_stays_inside_data_root(gateway, data_dir, path):
    assert (data_dir.parent / "secret.txt").exists()
    with raises(NotFound):
        gateway.resolve_data(path)


def test_locate_never_leaves_data_root(gateway, data_dir):
    location = gateway.locate("../../etc/passwd")
    assert location == data_dir / "etc" / "passwd"


def test_container_is_decoded(gateway):
    assert gateway.resolve_data("msg/attach/photo.dat") == InlineBytes(
        "image/png", PNG_BYTES
    )


def test_container_extension_is_case_insensitive(gateway):
    assert gateway.resolve_data("msg/attach/LOUD.DAT") == InlineBytes(
        "image/png", PNG_BYTES
    )


def test_unrecognized_container_passes_through(gateway):
    outcome = gateway.resolve_data("msg/attach/junk.dat")
    assert outcome.body == b"not an image at all"
    assert outcome.content_type == (guess_type("junk.dat")[0] or DEFAULT_CONTENT_TYPE)


@mark.parametrize(
    "extension, content_type",
    [
        ("jpg", "image/jpeg"),
        ("png", "image/png"),
        ("gif", "image/gif"),
        ("bmp", "image/bmp"),
        ("tif", "image/jpg"),
        ("webp", "image/jpg"),
    ],
)
def test_decoded_content_types(data_dir, extension, content_type):
    decoder = FakeDecoder((b"decoded", extension))
    gateway = MediaGateway(data_dir, FakeStore(), decoder, FakeTranscoder())
    assert gateway.resolve_data("msg/attach/junk.dat") == InlineBytes(
        content_type, b"decoded"
    )
    assert decoder.calls == [b"not an image at all"]


def test_decoder_only_sees_containers(data_dir):
    decoder = FakeDecoder((b"decoded", "png"))
    gateway = MediaGateway(data_dir, FakeStore(), decoder, FakeTranscoder())
    gateway.resolve_data("msg/video/clip.mp4")
    assert decoder.calls == []


def test_voice_resolution_handles_missing_payload(gateway):
    assert gateway.resolve_voice(None) == InlineBytes("audio/mp3", b"ID3 fake mp3")


def test_overlong_name_is_not_found(gateway):
    with raises(NotFound):
        gateway.resolve_data("msg/attach/" + "a" * 300 + ".dat")
