"""
Tests for UploadSessionManager: init, confirm, seal, archive, status and download access.
"""

import asyncio
import gc
import io
import json
import zipfile
from urllib.parse import parse_qs, urlparse

import pytest

from filerelay.core.auth import hash_credential
from filerelay.core.errors import (
    AccessDenied,
    Incomplete,
    InvalidChunk,
    InvalidCredential,
    InvalidInput,
    InvalidStateTransition,
    NoFiles,
    RemoteInconsistency,
    SealFailed,
    SessionNotFound,
)
from filerelay.core.manager.session_manager import MULTI_FILE_ARCHIVE_NAME
from filerelay.store.keys import counter_key
from shared_schemas.transfer_service import FileDeclaration, SessionState
from conftest import CHUNK, KB, client_error


def payload(size: int, seed: int = 0) -> bytes:
    return bytes((i * 31 + seed) % 251 for i in range(size))


async def start(manager, contents, credential="1234"):
    files = [FileDeclaration(name=name, size=len(data)) for name, data in contents.items()]
    return await manager.init(files, credential)


async def upload_chunks(manager, fake_s3, descriptor, contents, skip=()):
    """Simulate the client: PUT each chunk to storage, then confirm it."""
    session = descriptor.session
    for target in session.source_files:
        data = contents[target.name]
        for index, part in enumerate(descriptor.part_descriptors[target.name]):
            if (target.name, index) in skip:
                continue
            chunk = data[index * CHUNK:(index + 1) * CHUNK]
            etag = fake_s3.store_part(target.remote_multipart_id, part.part_number, chunk)
            await manager.confirm_chunk(session.session_id, target.name, index, part.part_number, etag)


async def finish(manager, fake_s3, contents, credential="1234"):
    """Run a session all the way to done."""
    descriptor = await start(manager, contents, credential)
    await upload_chunks(manager, fake_s3, descriptor, contents)
    await manager.seal(descriptor.session.session_id)
    return await manager.archive(descriptor.session.session_id)


def record_saves(manager, monkeypatch):
    """Track the state of every session record written."""
    history = []
    save = manager.sessions.save

    async def recording_save(session):
        history.append(session.state.value)
        await save(session)

    monkeypatch.setattr(manager.sessions, "save", recording_save)
    return history


# ----------------------------------------------------------------------
# Init
# ----------------------------------------------------------------------

async def test_init_plans_every_chunk(manager, fake_s3, store):
    contents = {"a.bin": payload(12 * KB), "b.txt": payload(3 * KB)}
    descriptor = await start(manager, contents)
    session = descriptor.session

    assert session.state == SessionState.INGESTING
    assert [t.total_chunks for t in session.source_files] == [3, 1]
    assert [p.part_number for p in descriptor.part_descriptors["a.bin"]] == [1, 2, 3]
    assert fake_s3.calls["create_multipart_upload"] == 2
    assert session.credential_hash == hash_credential("1234")
    stored = json.loads(await store.get(f"upload:{session.session_id}"))
    assert "1234" not in stored.values()
    assert session.is_single_zip is False


async def test_empty_file_has_one_chunk(manager):
    descriptor = await start(manager, {"empty.txt": b""})
    assert descriptor.session.source_files[0].total_chunks == 1


@pytest.mark.parametrize("credential", ["", "123", "12345", "12a4", "１２３４"])
async def test_init_rejects_bad_credential_before_remote_calls(manager, fake_s3, credential):
    with pytest.raises(InvalidCredential):
        await start(manager, {"a.bin": b"x"}, credential=credential)
    assert sum(fake_s3.calls.values()) == 0


async def test_init_rejects_empty_file_list(manager, fake_s3):
    with pytest.raises(NoFiles):
        await manager.init([], "1234")
    assert sum(fake_s3.calls.values()) == 0


@pytest.mark.parametrize("files", [
    [FileDeclaration(name="a.bin", size=1), FileDeclaration(name="a.bin", size=2)],
    [FileDeclaration(name="../etc/passwd", size=1)],
    [FileDeclaration(name="big.bin", size=101 * KB)],
])
async def test_init_rejects_invalid_files(manager, fake_s3, files):
    with pytest.raises(InvalidInput):
        await manager.init(files, "1234")
    assert sum(fake_s3.calls.values()) == 0


async def test_init_failure_aborts_created_uploads(manager, fake_s3):
    fake_s3.failures["create_multipart_upload"] = [None, client_error("AccessDenied", 403)]

    with pytest.raises(Exception):
        await start(manager, {"a.bin": payload(10), "b.bin": payload(10)})

    assert fake_s3.aborted_uploads == ["upload-1"]
    assert fake_s3.uploads == {}


# ----------------------------------------------------------------------
# Confirm
# ----------------------------------------------------------------------

async def test_confirm_reports_progress(manager, fake_s3):
    contents = {"a.bin": payload(12 * KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    target = descriptor.session.source_files[0]

    etag = fake_s3.store_part(target.remote_multipart_id, 1, contents["a.bin"][:CHUNK])
    first = await manager.confirm_chunk(sid, "a.bin", 0, 1, etag)
    again = await manager.confirm_chunk(sid, "a.bin", 0, 1, etag)

    assert (first.is_new, first.uploaded_count, first.total_chunks) == (True, 1, 3)
    assert (again.is_new, again.uploaded_count, again.total_chunks) == (False, 1, 3)
    assert first.progress == pytest.approx(33.33)


async def test_confirm_validates_file_and_index(manager):
    descriptor = await start(manager, {"a.bin": payload(6 * KB)})
    sid = descriptor.session.session_id

    with pytest.raises(InvalidChunk):
        await manager.confirm_chunk(sid, "nope.bin", 0, 1, "etag")
    with pytest.raises(InvalidChunk):
        await manager.confirm_chunk(sid, "a.bin", 2, 3, "etag")
    with pytest.raises(SessionNotFound):
        await manager.confirm_chunk("missing", "a.bin", 0, 1, "etag")


async def test_etag_mismatch_fails_session(manager, fake_s3):
    descriptor = await start(manager, {"a.bin": payload(6 * KB)})
    sid = descriptor.session.session_id

    await manager.confirm_chunk(sid, "a.bin", 0, 1, "etag-1")
    with pytest.raises(RemoteInconsistency):
        await manager.confirm_chunk(sid, "a.bin", 0, 1, "etag-2")

    session = await manager.sessions.load(sid)
    assert session.state == SessionState.FAILED
    assert "etag-1" in session.error
    assert fake_s3.uploads == {}

    with pytest.raises(InvalidStateTransition):
        await manager.seal(sid)


async def test_conflicting_confirm_while_archiving_keeps_state_moving_forward(manager, fake_s3, monkeypatch):
    contents = {"a.bin": payload(6 * KB), "b.bin": payload(2 * KB, seed=1)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents)

    entered, release = asyncio.Event(), asyncio.Event()

    async def stalled_confirm(*args, **kwargs):
        entered.set()
        await release.wait()
        raise RemoteInconsistency("Chunk 0 of a.bin was already confirmed with another ETag")

    monkeypatch.setattr(manager.ledger, "confirm", stalled_confirm)
    history = record_saves(manager, monkeypatch)

    # The confirm has loaded the session while it was still ingesting
    confirm = asyncio.create_task(manager.confirm_chunk(sid, "a.bin", 0, 1, "other"))
    await entered.wait()

    await manager.seal(sid)
    archive = asyncio.create_task(manager.archive(sid))
    await asyncio.sleep(0)
    release.set()

    confirm_result, session = await asyncio.gather(confirm, archive, return_exceptions=True)

    assert isinstance(confirm_result, RemoteInconsistency)
    assert session.state == SessionState.DONE
    assert "failed" not in history
    assert history[-1] == "done"
    order = [state.value for state in SessionState]
    assert [order.index(s) for s in history] == sorted(order.index(s) for s in history)
    assert fake_s3.aborted_uploads == []
    assert (await manager.sessions.load(sid)).state == SessionState.DONE


# ----------------------------------------------------------------------
# Seal
# ----------------------------------------------------------------------

async def test_seal_names_missing_chunk(manager, fake_s3):
    # 12KB file with 5KB chunks -> 3 chunks; chunk 1 never uploaded
    contents = {"a.bin": payload(12 * KB)}
    descriptor = await start(manager, contents)
    await upload_chunks(manager, fake_s3, descriptor, contents, skip={("a.bin", 1)})

    with pytest.raises(Incomplete) as exc_info:
        await manager.seal(descriptor.session.session_id)

    assert exc_info.value.missing == {"a.bin": [1]}
    assert "a.bin" in exc_info.value.message
    assert (await manager.sessions.load(descriptor.session.session_id)).state == SessionState.INGESTING
    assert fake_s3.calls["complete_multipart_upload"] == 0


async def test_seal_detects_gap_masked_by_counter(manager, fake_s3, store):
    contents = {"a.bin": payload(12 * KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents, skip={("a.bin", 1)})

    # Counter claims everything arrived; the records say otherwise
    await store.incr(counter_key(sid))
    assert (await manager.status(sid)).progress == 50.0

    with pytest.raises(Incomplete) as exc_info:
        await manager.seal(sid)
    assert exc_info.value.missing == {"a.bin": [1]}


async def test_refused_seal_leaves_no_session_lock_behind(manager, fake_s3):
    contents = {"a.bin": payload(12 * KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents, skip={("a.bin", 2)})

    with pytest.raises(Incomplete):
        await manager.seal(sid)
    gc.collect()

    assert sid not in manager._locks


async def test_seal_completes_every_source(manager, fake_s3):
    contents = {"a.bin": payload(12 * KB), "b.bin": payload(KB, seed=1)}
    descriptor = await start(manager, contents)
    await upload_chunks(manager, fake_s3, descriptor, contents)

    session = await manager.seal(descriptor.session.session_id)

    assert session.state == SessionState.SEALED
    assert session.sealed_at is not None
    for target in session.source_files:
        assert fake_s3.objects[target.storage_key] == contents[target.name]

    # Sealing again is a no-op
    again = await manager.seal(session.session_id)
    assert again.state == SessionState.SEALED
    assert fake_s3.calls["complete_multipart_upload"] == 2


async def test_seal_retry_after_partial_remote_failure(manager, fake_s3):
    contents = {"a.bin": payload(6 * KB), "b.bin": payload(2 * KB, seed=3)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents)

    # First file completes, second is rejected
    fake_s3.failures["complete_multipart_upload"] = [None, client_error("AccessDenied", 403)]
    with pytest.raises(SealFailed) as exc_info:
        await manager.seal(sid)
    assert exc_info.value.file_name == "b.bin"
    assert (await manager.sessions.load(sid)).state == SessionState.INGESTING

    # Retry: the already completed upload is recognized, the other completes
    session = await manager.seal(sid)
    assert session.state == SessionState.SEALED
    assert fake_s3.objects[session.source_files[1].storage_key] == contents["b.bin"]


# ----------------------------------------------------------------------
# Archive
# ----------------------------------------------------------------------

async def test_archive_repacks_files(manager, fake_s3, ledger):
    contents = {"a.bin": payload(12 * KB), "notes.txt": payload(2 * KB, seed=5)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents)
    await manager.seal(sid)

    session = await manager.archive(sid)

    assert session.state == SessionState.DONE
    assert session.result_archive_name == MULTI_FILE_ARCHIVE_NAME
    archive = fake_s3.objects[f"archives/{session.result_archive_id}.zip"]
    assert session.result_archive_size == len(archive)

    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        assert zf.namelist() == ["a.bin", "notes.txt"]
        for name, data in contents.items():
            assert zf.read(name) == data

    # Temp sources and ledger records are gone
    assert not any(key.startswith("temp/") for key in fake_s3.objects)
    assert await ledger.list_confirmed(sid, "a.bin") == []

    status = await manager.status(sid)
    assert status.progress == 100.0
    assert status.archive_id == session.result_archive_id


async def test_single_zip_is_copied_not_repacked(manager, fake_s3):
    contents = {"photos.zip": payload(7 * KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    assert descriptor.session.is_single_zip

    await upload_chunks(manager, fake_s3, descriptor, contents)
    await manager.seal(sid)
    session = await manager.archive(sid)

    assert session.state == SessionState.DONE
    assert session.result_archive_name == "photos.zip"
    assert fake_s3.objects[f"archives/{session.result_archive_id}.zip"] == contents["photos.zip"]
    assert fake_s3.calls["copy"] == 1
    assert fake_s3.calls["upload_part"] == 0
    assert "temp/" not in "".join(fake_s3.objects)


async def test_archive_failure_marks_session_failed(manager, fake_s3):
    contents = {"a.bin": payload(4 * KB), "b.bin": payload(4 * KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents)
    await manager.seal(sid)

    fake_s3.failures["get_object"] = [client_error("AccessDenied", 403)]
    session = await manager.archive(sid)

    assert session.state == SessionState.FAILED
    assert session.result_archive_id is None
    assert "AccessDenied" in session.error
    assert len(fake_s3.aborted_uploads) == 1

    status = await manager.status(sid)
    assert status.state == SessionState.FAILED
    assert status.error == session.error


async def test_archive_never_overwrites_a_terminal_record(manager, fake_s3, monkeypatch):
    contents = {"a.bin": payload(6 * KB), "b.bin": payload(2 * KB, seed=1)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents)
    await manager.seal(sid)

    build = manager.builder.build

    async def build_after_outside_failure(*args, **kwargs):
        # Another writer fails the session while the archive is being built
        stored = await manager.sessions.load(sid)
        stored.mark_failed("expired")
        await manager.sessions.save(stored)
        return await build(*args, **kwargs)

    monkeypatch.setattr(manager.builder, "build", build_after_outside_failure)
    session = await manager.archive(sid)

    assert session.state == SessionState.FAILED
    assert session.error == "expired"
    assert session.result_archive_id is None
    stored = await manager.sessions.load(sid)
    assert stored.state == SessionState.FAILED
    assert stored.error == "expired"
    # The half-built archive upload was aborted
    assert len(fake_s3.aborted_uploads) == 1


async def test_archive_requires_sealed_session(manager):
    descriptor = await start(manager, {"a.bin": payload(KB)})
    with pytest.raises(InvalidStateTransition):
        await manager.archive(descriptor.session.session_id)


async def test_session_left_archiving_is_not_rebuilt(manager, fake_s3):
    contents = {"a.bin": payload(2 * KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents)
    sealed = await manager.seal(sid)

    # A crash after the archiving transition leaves this record behind
    sealed.transition_to(SessionState.ARCHIVING)
    await manager.sessions.save(sealed)

    assert (await manager.seal(sid)).state == SessionState.ARCHIVING
    assert (await manager.archive(sid)).state == SessionState.ARCHIVING
    assert fake_s3.calls["create_multipart_upload"] == 1


async def test_confirm_after_seal_is_rejected(manager, fake_s3):
    contents = {"a.bin": payload(KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id
    await upload_chunks(manager, fake_s3, descriptor, contents)
    await manager.seal(sid)

    with pytest.raises(InvalidStateTransition):
        await manager.confirm_chunk(sid, "a.bin", 0, 1, "etag")


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------

async def test_status_projection(manager, fake_s3):
    contents = {"a.bin": payload(12 * KB)}
    descriptor = await start(manager, contents)
    sid = descriptor.session.session_id

    assert (await manager.status(sid)).progress == 0.0

    await upload_chunks(manager, fake_s3, descriptor, contents, skip={("a.bin", 1), ("a.bin", 2)})
    status = await manager.status(sid)
    assert status.state == SessionState.INGESTING
    assert status.progress == pytest.approx(16.67)

    await upload_chunks(manager, fake_s3, descriptor, contents, skip={("a.bin", 0)})
    await manager.seal(sid)
    assert (await manager.status(sid)).progress == 50.0

    with pytest.raises(SessionNotFound):
        await manager.status("missing")


# ----------------------------------------------------------------------
# Download access
# ----------------------------------------------------------------------

async def test_verify_access_and_authorize_download(manager, fake_s3):
    session = await finish(manager, fake_s3, {"a.bin": payload(3 * KB), "b.bin": payload(KB, seed=2)})
    sid = session.session_id

    verified, token = await manager.verify_access(sid, "1234")
    assert verified.result_archive_name == MULTI_FILE_ARCHIVE_NAME
    assert verified.result_archive_size == session.result_archive_size

    url = urlparse(await manager.authorize_download(sid, token))
    assert url.path == f"/test-bucket/archives/{session.result_archive_id}.zip"
    assert parse_qs(url.query)["response-content-disposition"] == ['attachment; filename="files.zip"']


async def test_wrong_access_code_is_denied(manager, fake_s3, observer):
    session = await finish(manager, fake_s3, {"a.bin": payload(KB)})

    with pytest.raises(AccessDenied):
        await manager.verify_access(session.session_id, "4321")
    assert observer.counters["session.access_denied"] == 1


@pytest.mark.parametrize("token", ["", "not-a-token", "é"])
async def test_wrong_download_token_is_denied(manager, fake_s3, token):
    session = await finish(manager, fake_s3, {"a.bin": payload(KB)})

    with pytest.raises(AccessDenied):
        await manager.authorize_download(session.session_id, token)
    assert fake_s3.calls["generate_presigned_url"] == 1  # the single part URL from init


async def test_download_token_is_bound_to_its_session(manager, fake_s3):
    first = await finish(manager, fake_s3, {"a.bin": payload(KB)})
    second = await finish(manager, fake_s3, {"a.bin": payload(KB, seed=1)})

    _, first_token = await manager.verify_access(first.session_id, "1234")
    _, second_token = await manager.verify_access(second.session_id, "1234")

    assert first_token != second_token
    with pytest.raises(AccessDenied):
        await manager.authorize_download(second.session_id, first_token)


async def test_access_requires_finished_archive(manager, fake_s3):
    descriptor = await start(manager, {"a.bin": payload(KB)})

    with pytest.raises(InvalidStateTransition):
        await manager.verify_access(descriptor.session.session_id, "1234")
    with pytest.raises(SessionNotFound):
        await manager.verify_access("missing", "1234")
