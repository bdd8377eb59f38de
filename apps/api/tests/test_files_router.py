from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.future import select

from conftest import ALICE_ID, BOB_ID, CAROL_ID, auth_header, upload_file
from models.audit_log import AuditLog
from models.file import File
from models.file_share import FileShare
from models.share_link import ShareLink
from services import files as file_service
from services.storage import StorageError


async def _audit_actions(session_maker, file_id=None):
    async with session_maker() as session:
        query = select(AuditLog).order_by(AuditLog.timestamp.asc())
        if file_id:
            query = query.where(AuditLog.file_id == file_id)
        rows = (await session.execute(query)).scalars().all()
    return [(row.user_id, row.action) for row in rows]


@pytest.mark.asyncio
async def test_upload_creates_file_record_and_audit_entry(vault_client, fake_storage):
    client, session_maker = vault_client

    response = await client.post(
        "/files/upload",
        files=[
            ("files", ("report.pdf", b"%PDF-1.4 fake", "application/pdf")),
            ("files", ("photo.png", b"\x89PNG fake", "image/png")),
        ],
        headers=auth_header(ALICE_ID),
    )

    assert response.status_code == 201
    payload = response.json()
    assert payload["message"] == "2 file(s) uploaded successfully"
    names = sorted(f["original_name"] for f in payload["files"])
    assert names == ["photo.png", "report.pdf"]
    first = payload["files"][0]
    assert first["owner"]["id"] == ALICE_ID
    assert first["is_owner"] is True
    assert first["permission"] == "download"
    assert first["path"].startswith("https://storage.test/")
    assert len(fake_storage["objects"]) == 2

    actions = await _audit_actions(session_maker)
    assert actions == [(ALICE_ID, "upload"), (ALICE_ID, "upload")]


@pytest.mark.asyncio
async def test_upload_rejects_disallowed_type(vault_client, fake_storage):
    client, session_maker = vault_client

    response = await client.post(
        "/files/upload",
        files=[("files", ("tool.exe", b"MZ", "application/x-msdownload"))],
        headers=auth_header(ALICE_ID),
    )

    assert response.status_code == 400
    assert "not allowed" in response.json()["detail"]
    assert fake_storage["upload"].await_count == 0


@pytest.mark.asyncio
async def test_upload_rejects_oversize_file_before_any_storage_call(vault_client, fake_storage):
    client, session_maker = vault_client

    with patch("services.files.settings.MAX_UPLOAD_BYTES", 8):
        response = await client.post(
            "/files/upload",
            files=[
                ("files", ("small.pdf", b"tiny", "application/pdf")),
                ("files", ("big.pdf", b"way more than eight bytes", "application/pdf")),
            ],
            headers=auth_header(ALICE_ID),
        )

    assert response.status_code == 400
    assert "exceeds" in response.json()["detail"]
    assert fake_storage["upload"].await_count == 0
    async with session_maker() as session:
        assert (await session.execute(select(File))).scalars().all() == []


@pytest.mark.asyncio
async def test_upload_without_files_or_too_many_files(vault_client):
    client, _ = vault_client

    empty = await client.post("/files/upload", headers=auth_header(ALICE_ID))
    assert empty.status_code == 400

    too_many = await client.post(
        "/files/upload",
        files=[("files", (f"f{i}.pdf", b"x", "application/pdf")) for i in range(11)],
        headers=auth_header(ALICE_ID),
    )
    assert too_many.status_code == 400
    assert "Too many files" in too_many.json()["detail"]


@pytest.mark.asyncio
async def test_upload_storage_failure_leaves_no_partial_state(vault_client, fake_storage):
    client, session_maker = vault_client
    calls = {"n": 0}

    async def _flaky_upload(key, content, content_type):
        calls["n"] += 1
        if calls["n"] == 2:
            raise StorageError("bucket unavailable")
        return f"https://storage.test/{key}"

    fake_storage["upload"].side_effect = _flaky_upload

    response = await client.post(
        "/files/upload",
        files=[
            ("files", ("a.pdf", b"first", "application/pdf")),
            ("files", ("b.pdf", b"second", "application/pdf")),
        ],
        headers=auth_header(ALICE_ID),
    )

    assert response.status_code == 500
    assert response.json()["detail"] == "Error uploading files"
    # the first object pushed in this request is cleaned up
    assert fake_storage["delete"].await_count == 1
    async with session_maker() as session:
        assert (await session.execute(select(File))).scalars().all() == []
    assert await _audit_actions(session_maker) == []


@pytest.mark.asyncio
async def test_requests_without_bearer_token_are_rejected(vault_client):
    client, _ = vault_client

    assert (await client.get("/files/my-files")).status_code == 401
    bad = await client.get("/files/my-files", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401


@pytest.mark.asyncio
async def test_report_sharing_walkthrough(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client, ALICE_ID, "report.pdf")

    alice_files = (await client.get("/files/my-files", headers=auth_header(ALICE_ID))).json()
    bob_files = (await client.get("/files/my-files", headers=auth_header(BOB_ID))).json()
    assert [f["id"] for f in alice_files] == [uploaded["id"]]
    assert bob_files == []

    share = await client.post(
        f"/files/{uploaded['id']}/share",
        json={"users": [BOB_ID], "permission": "view"},
        headers=auth_header(ALICE_ID),
    )
    assert share.status_code == 200
    assert [(e["user"]["id"], e["permission"]) for e in share.json()["shared_with"]] == [(BOB_ID, "view")]

    shared = (await client.get("/files/shared-with-me", headers=auth_header(BOB_ID))).json()
    assert len(shared) == 1
    assert shared[0]["id"] == uploaded["id"]
    assert shared[0]["permission"] == "view"
    assert shared[0]["is_owner"] is False
    assert shared[0]["share_links"] == []

    # view-only sharing still allows download
    download = await client.get(f"/files/{uploaded['id']}/download", headers=auth_header(BOB_ID))
    assert download.status_code == 302
    assert download.headers["location"] == f"{uploaded['path']}?signed=1"

    actions = await _audit_actions(session_maker, uploaded["id"])
    assert actions == [(ALICE_ID, "upload"), (ALICE_ID, "share"), (BOB_ID, "download")]


@pytest.mark.asyncio
async def test_download_can_be_gated_by_permission(vault_client):
    client, _ = vault_client
    uploaded = await upload_file(client)
    await client.post(
        f"/files/{uploaded['id']}/share",
        json={"users": [BOB_ID], "permission": "view"},
        headers=auth_header(ALICE_ID),
    )

    with patch("routers.files.settings.ENFORCE_DOWNLOAD_PERMISSION", True):
        bob = await client.get(f"/files/{uploaded['id']}/download", headers=auth_header(BOB_ID))
        alice = await client.get(f"/files/{uploaded['id']}/download", headers=auth_header(ALICE_ID))

    assert bob.status_code == 403
    assert alice.status_code == 302


@pytest.mark.asyncio
async def test_download_accepts_query_token_and_denies_strangers(vault_client):
    client, _ = vault_client
    uploaded = await upload_file(client)
    token = auth_header(ALICE_ID)["Authorization"].split(" ", 1)[1]

    via_query = await client.get(f"/files/{uploaded['id']}/download", params={"token": token})
    stranger = await client.get(f"/files/{uploaded['id']}/download", headers=auth_header(CAROL_ID))

    assert via_query.status_code == 302
    assert stranger.status_code == 403


@pytest.mark.asyncio
async def test_resharing_updates_permission_in_place(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client)

    for permission in ("view", "download", "download"):
        response = await client.post(
            f"/files/{uploaded['id']}/share",
            json={"users": [BOB_ID], "permission": permission},
            headers=auth_header(ALICE_ID),
        )
        assert response.status_code == 200

    entries = response.json()["shared_with"]
    assert len(entries) == 1
    assert entries[0]["permission"] == "download"
    async with session_maker() as session:
        rows = (await session.execute(select(FileShare))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_share_validation_and_ownership(vault_client):
    client, _ = vault_client
    uploaded = await upload_file(client)
    url = f"/files/{uploaded['id']}/share"

    empty = await client.post(url, json={"users": []}, headers=auth_header(ALICE_ID))
    bad_permission = await client.post(url, json={"users": [BOB_ID], "permission": "edit"}, headers=auth_header(ALICE_ID))
    unknown_user = await client.post(url, json={"users": ["ghost"]}, headers=auth_header(ALICE_ID))
    not_owner = await client.post(url, json={"users": [CAROL_ID]}, headers=auth_header(BOB_ID))
    missing_file = await client.post("/files/nope/share", json={"users": [BOB_ID]}, headers=auth_header(ALICE_ID))

    assert empty.status_code == 400
    assert bad_permission.status_code == 400
    assert unknown_user.status_code == 404
    assert not_owner.status_code == 403
    assert missing_file.status_code == 404


@pytest.mark.asyncio
async def test_sharing_only_with_self_is_rejected_without_audit(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client)

    response = await client.post(
        f"/files/{uploaded['id']}/share",
        json={"users": [ALICE_ID, ALICE_ID]},
        headers=auth_header(ALICE_ID),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Please provide users to share with"
    assert await _audit_actions(session_maker, uploaded["id"]) == [(ALICE_ID, "upload")]


@pytest.mark.asyncio
async def test_concurrent_first_share_falls_back_to_update(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client)

    async with session_maker() as session:
        file = await file_service.get_active_file(session, uploaded["id"])
        assert file.shared_with == []

        # another request grants the same user first
        async with session_maker() as other:
            other.add(FileShare(id="share-race", file_id=uploaded["id"], user_id=BOB_ID, permission="download"))
            await other.commit()

        count = await file_service.share_with_users(session, file, [BOB_ID], "view")

        assert count == 1
        assert [(e.user_id, e.permission) for e in file.shared_with] == [(BOB_ID, "view")]
        assert file.shared_with[0].user.name == "Bob Viewer"

    async with session_maker() as session:
        rows = (await session.execute(select(FileShare))).scalars().all()
    assert [(row.id, row.permission) for row in rows] == [("share-race", "view")]


@pytest.mark.asyncio
async def test_get_file_access_rules(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client)
    await client.post(
        f"/files/{uploaded['id']}/share",
        json={"users": [BOB_ID], "permission": "download"},
        headers=auth_header(ALICE_ID),
    )

    owner_view = await client.get(f"/files/{uploaded['id']}", headers=auth_header(ALICE_ID))
    shared_view = await client.get(f"/files/{uploaded['id']}", headers=auth_header(BOB_ID))
    stranger = await client.get(f"/files/{uploaded['id']}", headers=auth_header(CAROL_ID))

    assert owner_view.status_code == 200
    assert owner_view.json()["is_owner"] is True
    assert shared_view.status_code == 200
    assert shared_view.json()["permission"] == "download"
    assert stranger.status_code == 403

    actions = await _audit_actions(session_maker, uploaded["id"])
    assert actions.count((ALICE_ID, "view")) == 1
    assert actions.count((BOB_ID, "view")) == 1
    assert (CAROL_ID, "view") not in actions


@pytest.mark.asyncio
async def test_share_link_lifecycle(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client)

    created = await client.post(f"/files/{uploaded['id']}/share-link", headers=auth_header(ALICE_ID))
    assert created.status_code == 200
    link = created.json()
    assert link["expires_at"] is None
    assert link["link"].endswith(f"/share/{link['token']}")

    opened = await client.get(f"/files/link/{link['token']}", headers=auth_header(CAROL_ID))
    assert opened.status_code == 200
    assert opened.json()["id"] == uploaded["id"]
    assert opened.json()["share_links"] == []

    revoked = await client.delete(
        f"/files/{uploaded['id']}/share-link/{link['link_id']}",
        headers=auth_header(ALICE_ID),
    )
    assert revoked.status_code == 200

    after = await client.get(f"/files/link/{link['token']}", headers=auth_header(CAROL_ID))
    assert after.status_code == 403
    assert after.json()["detail"]["reason"] == "not_found_or_inactive"

    async with session_maker() as session:
        rows = (await session.execute(select(ShareLink))).scalars().all()
    assert len(rows) == 1
    assert rows[0].is_active is False

    actions = await _audit_actions(session_maker, uploaded["id"])
    assert actions == [
        (ALICE_ID, "upload"),
        (ALICE_ID, "share"),
        (CAROL_ID, "view"),
        (ALICE_ID, "revoke"),
    ]


@pytest.mark.asyncio
async def test_expired_share_link_is_rejected(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client)

    created = await client.post(
        f"/files/{uploaded['id']}/share-link",
        json={"expiresIn": 3600},
        headers=auth_header(ALICE_ID),
    )
    link = created.json()
    assert created.status_code == 200
    assert link["expires_at"] is not None
    expires_at = datetime.fromisoformat(link["expires_at"])
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    assert 3500 < remaining <= 3600

    async with session_maker() as session:
        row = (await session.execute(select(ShareLink))).scalar_one()
        row.expires_at = datetime.now(timezone.utc) - timedelta(seconds=5)
        await session.commit()

    response = await client.get(f"/files/link/{link['token']}", headers=auth_header(BOB_ID))
    assert response.status_code == 403
    assert response.json()["detail"] == {"reason": "expired", "message": "Link has expired"}


@pytest.mark.asyncio
async def test_share_link_owner_only_and_unknown_link(vault_client):
    client, _ = vault_client
    uploaded = await upload_file(client)

    not_owner = await client.post(f"/files/{uploaded['id']}/share-link", headers=auth_header(BOB_ID))
    bad_expiry = await client.post(
        f"/files/{uploaded['id']}/share-link",
        json={"expiresIn": 0},
        headers=auth_header(ALICE_ID),
    )
    snake_case = await client.post(
        f"/files/{uploaded['id']}/share-link",
        json={"expires_in": 60},
        headers=auth_header(ALICE_ID),
    )
    unknown_revoke = await client.delete(
        f"/files/{uploaded['id']}/share-link/missing",
        headers=auth_header(ALICE_ID),
    )
    unknown_token = await client.get("/files/link/does-not-exist", headers=auth_header(BOB_ID))

    assert not_owner.status_code == 403
    assert bad_expiry.status_code == 400
    assert snake_case.status_code == 200
    assert snake_case.json()["expires_at"] is not None
    assert unknown_revoke.status_code == 404
    assert unknown_token.status_code == 404


@pytest.mark.asyncio
async def test_revoke_user_access(vault_client):
    client, session_maker = vault_client
    uploaded = await upload_file(client)
    await client.post(
        f"/files/{uploaded['id']}/share",
        json={"users": [BOB_ID]},
        headers=auth_header(ALICE_ID),
    )

    revoked = await client.delete(f"/files/{uploaded['id']}/share/{BOB_ID}", headers=auth_header(ALICE_ID))
    assert revoked.status_code == 200
    assert revoked.json() == {"message": "User access revoked"}

    assert (await client.get("/files/shared-with-me", headers=auth_header(BOB_ID))).json() == []
    assert (await client.get(f"/files/{uploaded['id']}", headers=auth_header(BOB_ID))).status_code == 403

    again = await client.delete(f"/files/{uploaded['id']}/share/{BOB_ID}", headers=auth_header(ALICE_ID))
    assert again.status_code == 404

    actions = await _audit_actions(session_maker, uploaded["id"])
    assert actions.count((ALICE_ID, "revoke")) == 1


@pytest.mark.asyncio
async def test_soft_deleted_file_is_hidden_everywhere(vault_client, fake_storage):
    client, session_maker = vault_client
    uploaded = await upload_file(client)
    await client.post(
        f"/files/{uploaded['id']}/share",
        json={"users": [BOB_ID]},
        headers=auth_header(ALICE_ID),
    )
    link = (await client.post(f"/files/{uploaded['id']}/share-link", headers=auth_header(ALICE_ID))).json()

    not_owner = await client.delete(f"/files/{uploaded['id']}", headers=auth_header(BOB_ID))
    assert not_owner.status_code == 403

    deleted = await client.delete(f"/files/{uploaded['id']}", headers=auth_header(ALICE_ID))
    assert deleted.status_code == 200
    fake_storage["delete"].assert_awaited_once_with(uploaded["filename"])

    assert (await client.get("/files/my-files", headers=auth_header(ALICE_ID))).json() == []
    assert (await client.get("/files/shared-with-me", headers=auth_header(BOB_ID))).json() == []
    assert (await client.get(f"/files/{uploaded['id']}", headers=auth_header(ALICE_ID))).status_code == 404
    assert (await client.get(f"/files/link/{link['token']}", headers=auth_header(BOB_ID))).status_code == 404
    assert (await client.get(f"/files/{uploaded['id']}/download", headers=auth_header(ALICE_ID))).status_code == 404
    assert (await client.delete(f"/files/{uploaded['id']}", headers=auth_header(ALICE_ID))).status_code == 404

    async with session_maker() as session:
        row = (await session.execute(select(File).where(File.id == uploaded["id"]))).scalar_one()
    assert row.is_deleted is True

    actions = await _audit_actions(session_maker, uploaded["id"])
    assert actions.count((ALICE_ID, "delete")) == 1


@pytest.mark.asyncio
async def test_delete_succeeds_when_object_purge_fails(vault_client, fake_storage):
    client, session_maker = vault_client
    uploaded = await upload_file(client)
    fake_storage["delete"].side_effect = StorageError("bucket unreachable")

    response = await client.delete(f"/files/{uploaded['id']}", headers=auth_header(ALICE_ID))

    assert response.status_code == 200
    async with session_maker() as session:
        row = (await session.execute(select(File).where(File.id == uploaded["id"]))).scalar_one()
    assert row.is_deleted is True


@pytest.mark.asyncio
async def test_audit_failure_does_not_change_responses(vault_client):
    client, session_maker = vault_client
    broken_maker = MagicMock(side_effect=RuntimeError("audit store down"))

    with patch("services.audit_log.async_session_maker", broken_maker):
        uploaded = await upload_file(client)
        share = await client.post(
            f"/files/{uploaded['id']}/share",
            json={"users": [BOB_ID], "permission": "view"},
            headers=auth_header(ALICE_ID),
        )
        link = await client.post(f"/files/{uploaded['id']}/share-link", headers=auth_header(ALICE_ID))
        download = await client.get(f"/files/{uploaded['id']}/download", headers=auth_header(BOB_ID))
        revoke = await client.delete(f"/files/{uploaded['id']}/share/{BOB_ID}", headers=auth_header(ALICE_ID))
        delete = await client.delete(f"/files/{uploaded['id']}", headers=auth_header(ALICE_ID))

    assert share.status_code == 200
    assert link.status_code == 200
    assert download.status_code == 302
    assert revoke.status_code == 200
    assert delete.status_code == 200
    assert broken_maker.call_count == 6
    assert await _audit_actions(session_maker) == []
