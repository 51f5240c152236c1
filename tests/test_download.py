"""Tests for the fetch / verify / unpack pipeline."""

import gzip
import hashlib
import io
import zipfile

import pytest
import requests

from crosrec.catalog import ImageStanza
from crosrec.core.messages import AcquireError, AcquireFailure, FatalCategory, UserQuit
from crosrec.download import acquire, check_repeat_url, unpack
from crosrec.host import HostCapabilities, UnpackMethod
from crosrec.state import StateStore
from crosrec.transfer import FetchError, fetch_url

URL = "http://example.com/images/test.zip"
PAYLOAD = bytes(range(256)) * 7 + b"\x00" * 208  # 2000 bytes


class FakeResponse:
    def __init__(self, status_code, body=b"", headers=None):
        self.status_code = status_code
        self.body = body
        self.headers = headers if headers is not None else {"Content-Length": str(len(body))}

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Replays prepared responses and records each request's headers."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, stream=False, headers=None, timeout=None):
        self.calls.append((url, dict(headers or {})))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class Script:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []
        self.said = []

    def ask(self, prompt):
        self.prompts.append(prompt)
        return self.answers.pop(0)

    def say(self, text):
        self.said.append(text)


def make_zip(member="img.bin", data=PAYLOAD) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(member, data)
    return buf.getvalue()


def make_stanza(container: bytes, **overrides) -> ImageStanza:
    fields = dict(
        index=1,
        name="Test Image",
        file="img.bin",
        zip_file_size=len(container),
        file_size=len(PAYLOAD),
        url=URL,
        md5=hashlib.md5(container).hexdigest(),
        sha1=hashlib.sha1(container).hexdigest(),
    )
    fields.update(overrides)
    return ImageStanza(**fields)


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state")


def plenty(path):
    return 100000


MD5 = HostCapabilities(checksum_kind="md5")
SHA1 = HostCapabilities(checksum_kind="sha1")


class TestAcquire:
    def test_download_verify_unpack(self, workdir, store):
        """A correct container yields the unpacked image and its required capacity."""
        container = make_zip()
        session = FakeSession(FakeResponse(200, container))
        script = Script()

        artifact = acquire(make_stanza(container), workdir, MD5, store, script.ask, script.say,
                           session=session, free_fn=plenty)

        assert artifact.path == workdir / "img.bin"
        assert artifact.path.read_bytes() == PAYLOAD
        assert artifact.size == 2000
        assert artifact.required_mb == 1
        assert (workdir / "test.zip").read_bytes() == container
        assert store.last_url() == URL
        assert f"Downloading image zipfile from {URL}" in script.said
        assert "Unpacking the zipfile" in script.said

    def test_sha1_verification(self, workdir, store):
        container = make_zip()
        session = FakeSession(FakeResponse(200, container))

        artifact = acquire(make_stanza(container, md5=None), workdir, SHA1, store,
                           Script().ask, Script().say, session=session, free_fn=plenty)

        assert artifact.path.read_bytes() == PAYLOAD

    def test_digest_compared_case_insensitively(self, workdir, store):
        container = make_zip()
        stanza = make_stanza(container, md5=hashlib.md5(container).hexdigest().upper())
        session = FakeSession(FakeResponse(200, container))

        artifact = acquire(stanza, workdir, MD5, store, Script().ask, Script().say,
                           session=session, free_fn=plenty)

        assert artifact.size == 2000

    def test_checksum_mismatch_stops_before_unpack(self, workdir, store):
        container = make_zip()
        stanza = make_stanza(container, md5="0" * 32)
        session = FakeSession(FakeResponse(200, container))

        with pytest.raises(AcquireError) as ei:
            acquire(stanza, workdir, MD5, store, Script().ask, Script().say,
                    session=session, free_fn=plenty)

        assert ei.value.kind is AcquireFailure.CHECKSUM_MISMATCH
        assert ei.value.category is FatalCategory.NETWORK
        assert not (workdir / "img.bin").exists()

    def test_size_mismatch(self, workdir, store):
        container = make_zip()
        stanza = make_stanza(container, zip_file_size=len(container) + 1)
        session = FakeSession(FakeResponse(200, container))

        with pytest.raises(AcquireError) as ei:
            acquire(stanza, workdir, MD5, store, Script().ask, Script().say,
                    session=session, free_fn=plenty)

        assert ei.value.kind is AcquireFailure.SIZE_MISMATCH

    def test_insufficient_space_checked_first(self, workdir, store):
        container = make_zip()
        session = FakeSession()

        with pytest.raises(AcquireError) as ei:
            acquire(make_stanza(container), workdir, MD5, store, Script().ask, Script().say,
                    session=session, free_fn=lambda path: 0)

        assert ei.value.kind is AcquireFailure.INSUFFICIENT_SPACE
        assert ei.value.category is FatalCategory.NONE
        assert "it has 0MB, we need 1MB" in ei.value.message
        assert "WORKDIR=" in ei.value.message
        assert session.calls == []

    def test_fetch_failure(self, workdir, store):
        container = make_zip()
        session = FakeSession(FakeResponse(404, b"not found"))

        with pytest.raises(AcquireError) as ei:
            acquire(make_stanza(container), workdir, MD5, store, Script().ask, Script().say,
                    session=session, free_fn=plenty)

        assert ei.value.kind is AcquireFailure.FETCH_FAILED
        assert ei.value.message.startswith("Unable to download a valid recovery image")

    def test_resume_appends_to_partial_download(self, workdir, store):
        container = make_zip()
        half = len(container) // 2
        (workdir / "test.zip").write_bytes(container[:half])
        session = FakeSession(FakeResponse(206, container[half:]))

        artifact = acquire(make_stanza(container), workdir, MD5, store, Script().ask, Script().say,
                           session=session, free_fn=plenty)

        assert session.calls[0][1] == {"Range": f"bytes={half}-"}
        assert (workdir / "test.zip").read_bytes() == container
        assert artifact.path.read_bytes() == PAYLOAD

    def test_range_not_satisfiable_on_complete_file(self, workdir, store):
        container = make_zip()
        (workdir / "test.zip").write_bytes(container)
        session = FakeSession(FakeResponse(416))

        artifact = acquire(make_stanza(container), workdir, MD5, store, Script().ask, Script().say,
                           session=session, free_fn=plenty)

        assert artifact.size == 2000

    def test_server_ignoring_range_restarts(self, workdir, store):
        container = make_zip()
        (workdir / "test.zip").write_bytes(b"stale bytes")
        session = FakeSession(FakeResponse(200, container))

        acquire(make_stanza(container), workdir, MD5, store, Script().ask, Script().say,
                session=session, free_fn=plenty)

        assert (workdir / "test.zip").read_bytes() == container

    def test_unpacked_size_mismatch(self, workdir, store):
        container = make_zip()
        stanza = make_stanza(container, file_size=1999)
        session = FakeSession(FakeResponse(200, container))

        with pytest.raises(AcquireError) as ei:
            acquire(stanza, workdir, MD5, store, Script().ask, Script().say,
                    session=session, free_fn=plenty)

        assert ei.value.kind is AcquireFailure.UNPACK_FAILED

    def test_gzip_container(self, workdir, store):
        container = gzip.compress(PAYLOAD)
        stanza = make_stanza(container, url="http://example.com/img.bin.gz")
        caps = HostCapabilities(checksum_kind="sha1", unpack_method=UnpackMethod.GZIP)
        session = FakeSession(FakeResponse(200, container))

        artifact = acquire(stanza, workdir, caps, store, Script().ask, Script().say,
                           session=session, free_fn=plenty)

        assert artifact.path == workdir / "img.bin"
        assert artifact.path.read_bytes() == PAYLOAD

    def test_progress_reported(self, workdir, store):
        container = make_zip()
        session = FakeSession(FakeResponse(200, container))
        seen = []

        acquire(make_stanza(container), workdir, MD5, store, Script().ask, Script().say,
                session=session, progress_cb=lambda done, total: seen.append((done, total)),
                free_fn=plenty)

        assert seen
        assert seen[-1] == (len(container), len(container))


class TestRepeatedUrl:
    def test_new_url_recorded_without_prompt(self, store):
        script = Script()
        check_repeat_url(URL, store, script.ask, script.say)
        assert store.last_url() == URL
        assert script.prompts == []

    def test_no_quits_cleanly(self, store):
        store.save_last_url(URL)
        with pytest.raises(UserQuit) as ei:
            check_repeat_url(URL, store, Script("n").ask, Script().say)
        assert ei.value.exit_code == 0

    def test_yes_resets_choice(self, store):
        store.save_selection(3)
        store.save_last_url(URL)
        script = Script("y")

        with pytest.raises(UserQuit) as ei:
            check_repeat_url(URL, store, script.ask, script.say)

        assert ei.value.exit_code == 0
        assert store.load_selection().has_run is False
        assert any("run this tool again" in line for line in script.said)

    def test_continue_after_unrecognized_answer(self, store):
        store.save_last_url(URL)
        script = Script("maybe", "c")

        check_repeat_url(URL, store, script.ask, script.say)

        assert len(script.prompts) == 2
        assert "Updating..." in script.said

    def test_repeated_url_stops_acquire_before_fetch(self, workdir, store):
        container = make_zip()
        store.save_last_url(URL)
        session = FakeSession()

        with pytest.raises(UserQuit):
            acquire(make_stanza(container), workdir, MD5, store, Script("n").ask, Script().say,
                    session=session, free_fn=plenty)

        assert session.calls == []


class TestUnpack:
    def test_missing_member(self, workdir):
        container = workdir / "c.zip"
        container.write_bytes(make_zip(member="other.bin"))

        with pytest.raises(AcquireError) as ei:
            unpack(container, "img.bin", workdir, UnpackMethod.ZIP)
        assert ei.value.kind is AcquireFailure.UNPACK_FAILED

    def test_corrupt_archive(self, workdir):
        container = workdir / "c.zip"
        container.write_bytes(b"this is not a zip")

        with pytest.raises(AcquireError) as ei:
            unpack(container, "img.bin", workdir, UnpackMethod.ZIP)
        assert ei.value.kind is AcquireFailure.UNPACK_FAILED

    def test_replaces_previous_image(self, workdir):
        (workdir / "img.bin").write_bytes(b"old")
        container = workdir / "c.zip"
        container.write_bytes(make_zip())

        path = unpack(container, "img.bin", workdir, UnpackMethod.ZIP)
        assert path.read_bytes() == PAYLOAD


class TestFetchUrl:
    def test_local_path_copied(self, tmp_path):
        src = tmp_path / "catalog.conf"
        src.write_text("name=x\n")
        dest = tmp_path / "out.txt"

        fetch_url(str(src), dest)
        assert dest.read_text() == "name=x\n"

    def test_file_url(self, tmp_path):
        src = tmp_path / "catalog.conf"
        src.write_text("name=y\n")
        dest = tmp_path / "out.txt"

        fetch_url(src.as_uri(), dest)
        assert dest.read_text() == "name=y\n"

    def test_fresh_fetch_replaces_existing(self, tmp_path):
        dest = tmp_path / "out.bin"
        dest.write_bytes(b"partial")
        session = FakeSession(FakeResponse(200, b"complete"))

        fetch_url("http://example.com/out.bin", dest, session=session)

        assert dest.read_bytes() == b"complete"
        assert session.calls[0][1] == {}

    def test_connection_error(self, tmp_path):
        session = FakeSession(requests.ConnectionError("down"))
        with pytest.raises(FetchError):
            fetch_url("http://example.com/out.bin", tmp_path / "out.bin", session=session)

    def test_416_without_offset_is_an_error(self, tmp_path):
        session = FakeSession(FakeResponse(416))
        with pytest.raises(FetchError):
            fetch_url("http://example.com/out.bin", tmp_path / "out.bin", resume=True, session=session)

    def test_unwritable_destination(self, tmp_path):
        session = FakeSession(FakeResponse(200, b"complete"))
        with pytest.raises(FetchError) as ei:
            fetch_url("http://example.com/out.bin", tmp_path / "missing" / "out.bin", session=session)
        assert "Unable to write" in str(ei.value)

    def test_own_session_is_closed(self, tmp_path, monkeypatch):
        session = FakeSession(FakeResponse(200, b"complete"))
        monkeypatch.setattr("crosrec.transfer.make_session", lambda: session)

        fetch_url("http://example.com/out.bin", tmp_path / "out.bin")

        assert (tmp_path / "out.bin").read_bytes() == b"complete"
        assert session.closed is True

    def test_given_session_left_open(self, tmp_path):
        session = FakeSession(FakeResponse(200, b"complete"))
        fetch_url("http://example.com/out.bin", tmp_path / "out.bin", session=session)
        assert session.closed is False
