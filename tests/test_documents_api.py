# tests/test_documents_api.py
import json
from base64 import b64encode
from unittest.mock import patch

from itsdangerous import TimestampSigner
from starlette.concurrency import run_in_threadpool


def create_folder(client, name, parent_id=None):
    response = client.post("/document-storage/folders", json={"name": name, "parent_id": parent_id})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def upload(client, name, folder_id=None, content=b"%PDF-1.4", **form):
    data = dict(form)
    if folder_id is not None:
        data["folder_id"] = str(folder_id)
    response = client.post(
        "/document-storage/files",
        files=[("files", (name, content, "application/pdf"))],
        data=data,
    )
    assert response.status_code == 201, response.text
    return response.json()


def storage(client):
    response = client.get("/document-storage")
    assert response.status_code == 200
    return response.json()["data"]


def test_requires_login(client):
    assert client.get("/document-storage").status_code == 401
    assert client.post("/document-storage/folders", json={"name": "Docs"}).status_code == 401


def test_login_rejects_bad_password(client):
    client.post("/signup", data={"username": "mechanic", "password": "s3cret"})
    response = client.post("/login", data={"username": "mechanic", "password": "wrong"})
    assert response.status_code == 401


def test_signup_rejects_duplicate_username(client):
    client.post("/signup", data={"username": "mechanic", "password": "s3cret"})
    response = client.post("/signup", data={"username": "mechanic", "password": "other"})
    assert response.status_code == 409


def test_rename_cascades_through_api(logged_in):
    manuals = create_folder(logged_in, "Manuals")
    year = create_folder(logged_in, "2024", parent_id=manuals["id"])
    uploaded = upload(logged_in, "spec.pdf", folder_id=year["id"])["data"][0]
    assert uploaded["path"] == "/Manuals/2024/spec.pdf"

    response = logged_in.put(f"/document-storage/folders/{manuals['id']}", json={"name": "Docs"})
    assert response.status_code == 200
    assert response.json()["data"]["path"] == "/Docs"

    paths = {f["name"]: f["path"] for f in storage(logged_in)["folders"]}
    assert paths == {"Docs": "/Docs", "2024": "/Docs/2024"}
    file = logged_in.get(f"/document-storage/files/{uploaded['id']}").json()["data"]
    assert file["path"] == "/Docs/2024/spec.pdf"


def test_duplicate_folder_conflicts(logged_in):
    create_folder(logged_in, "Docs")
    response = logged_in.post("/document-storage/folders", json={"name": "Docs"})
    assert response.status_code == 409
    assert response.json() == {
        "success": False,
        "message": "A folder with this name already exists in this location",
    }
    assert len(storage(logged_in)["folders"]) == 1


def test_folder_name_validation(logged_in):
    assert logged_in.post("/document-storage/folders", json={"name": "   "}).status_code == 422
    assert logged_in.post("/document-storage/folders", json={"name": "a/b"}).status_code == 422


def test_move_into_descendant_is_bad_request(logged_in):
    top = create_folder(logged_in, "Top")
    child = create_folder(logged_in, "Child", parent_id=top["id"])
    response = logged_in.put(f"/document-storage/folders/{top['id']}", json={"parent_id": child["id"]})
    assert response.status_code == 400


def test_move_folder_to_root(logged_in):
    top = create_folder(logged_in, "Top")
    child = create_folder(logged_in, "Child", parent_id=top["id"])
    response = logged_in.put(f"/document-storage/folders/{child['id']}", json={"parent_id": None})
    assert response.status_code == 200
    assert response.json()["data"]["path"] == "/Child"


def test_delete_folder_with_failing_blob_store(logged_in, blob_store):
    docs = create_folder(logged_in, "Docs")
    year = create_folder(logged_in, "2024", parent_id=docs["id"])
    uploaded = upload(logged_in, "spec.pdf", folder_id=year["id"])["data"][0]
    blob_store.fail_deletes = True

    response = logged_in.delete(f"/document-storage/folders/{docs['id']}")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["folders_removed"] == 2
    assert body["data"]["files_removed"] == 1
    assert len(body["data"]["blob_failures"]) == 1
    assert storage(logged_in)["folders"] == []
    assert logged_in.get(f"/document-storage/files/{uploaded['id']}").status_code == 404


def test_file_move_conflict(logged_in):
    docs = create_folder(logged_in, "Docs")
    year = create_folder(logged_in, "2024", parent_id=docs["id"])
    archive = create_folder(logged_in, "Archive", parent_id=docs["id"])
    moving = upload(logged_in, "spec.pdf", folder_id=year["id"])["data"][0]
    upload(logged_in, "spec.pdf", folder_id=archive["id"])

    response = logged_in.put(f"/document-storage/files/{moving['id']}", json={"folder_id": archive["id"]})

    assert response.status_code == 409
    file = logged_in.get(f"/document-storage/files/{moving['id']}").json()["data"]
    assert file["path"] == "/Docs/2024/spec.pdf"


def test_upload_with_tags_and_partial_errors(logged_in):
    upload(logged_in, "a.pdf")
    response = logged_in.post(
        "/document-storage/files",
        files=[
            ("files", ("a.pdf", b"1", "application/pdf")),
            ("files", ("b.pdf", b"2", "application/pdf")),
        ],
        data={"tags": json.dumps(["amm", "b737"]), "description": "rev 3"},
    )
    assert response.status_code == 201
    body = response.json()
    assert [f["file_name"] for f in body["data"]] == ["b.pdf"]
    assert body["data"][0]["tags"] == ["amm", "b737"]
    assert body["data"][0]["description"] == "rev 3"
    assert len(body["errors"]) == 1
    assert body["message"] == "1 file(s) uploaded successfully with 1 error(s)"


def test_upload_comma_separated_tags(logged_in):
    body = upload(logged_in, "a.pdf", tags="wing, gear,wing")
    assert body["data"][0]["tags"] == ["gear", "wing"]


def test_upload_to_unknown_folder(logged_in):
    response = logged_in.post(
        "/document-storage/files",
        files=[("files", ("a.pdf", b"1", "application/pdf"))],
        data={"folder_id": "999"},
    )
    assert response.status_code == 404


def test_upload_too_large(logged_in, test_settings):
    response = logged_in.post(
        "/document-storage/files",
        files=[("files", ("big.bin", b"x" * (test_settings.max_upload_size_bytes + 1), None))],
    )
    assert response.status_code == 413


def test_download(logged_in):
    uploaded = upload(logged_in, "spec.pdf", content=b"manual bytes")["data"][0]

    response = logged_in.get(f"/document-storage/files/{uploaded['id']}/download")

    assert response.status_code == 200
    assert response.content == b"manual bytes"
    assert response.headers["content-type"] == "application/pdf"
    assert 'filename="spec.pdf"' in response.headers["content-disposition"]
    file = logged_in.get(f"/document-storage/files/{uploaded['id']}").json()["data"]
    assert file["download_count"] == 1


def test_delete_file(logged_in, blob_store):
    uploaded = upload(logged_in, "spec.pdf")["data"][0]
    response = logged_in.delete(f"/document-storage/files/{uploaded['id']}")
    assert response.status_code == 200
    assert blob_store.objects == {}
    assert storage(logged_in)["root_files"] == []


def test_other_users_cannot_see_folders(logged_in, client):
    docs = create_folder(logged_in, "Docs")

    client.post("/logout")
    client.post("/signup", data={"username": "inspector", "password": "pw"})
    client.post("/login", data={"username": "inspector", "password": "pw"})

    assert client.get(f"/document-storage/folders/{docs['id']}").status_code == 404
    assert client.delete(f"/document-storage/folders/{docs['id']}").status_code == 404
    assert storage(client)["folders"] == []


def test_reconcile_endpoint(logged_in):
    create_folder(logged_in, "Docs")
    response = logged_in.post("/document-storage/reconcile")
    assert response.status_code == 200
    assert response.json()["data"] == {"fixed": 0}


def login(client, username="mechanic", password="s3cret"):
    response = client.post("/login", data={"username": username, "password": password})
    assert response.status_code == 200
    return response.json()["data"]


def _forged_session(payload, secret_key):
    # Same encoding as Starlette's SessionMiddleware, signed with the given key
    data = b64encode(json.dumps(payload).encode("utf-8"))
    return TimestampSigner(secret_key).sign(data).decode("utf-8")


def test_plain_user_id_cookie_is_not_trusted(logged_in):
    docs = create_folder(logged_in, "Docs")
    owner_id = login(logged_in)["id"]

    logged_in.cookies.clear()
    logged_in.cookies.set("user_id", str(owner_id))

    assert logged_in.get("/document-storage").status_code == 401
    assert logged_in.delete(f"/document-storage/folders/{docs['id']}").status_code == 401

    logged_in.cookies.clear()
    login(logged_in)
    assert [f["id"] for f in storage(logged_in)["folders"]] == [docs["id"]]


def test_session_signed_with_wrong_key_is_rejected(logged_in):
    docs = create_folder(logged_in, "Docs")
    owner_id = login(logged_in)["id"]

    logged_in.cookies.clear()
    logged_in.cookies.set("session", _forged_session({"user_id": owner_id}, "not-the-server-key"))

    response = logged_in.delete(f"/document-storage/folders/{docs['id']}")
    assert response.status_code == 401

    logged_in.cookies.clear()
    login(logged_in)
    assert [f["id"] for f in storage(logged_in)["folders"]] == [docs["id"]]


def test_logout_ends_session(logged_in):
    assert logged_in.post("/logout").status_code == 200
    assert logged_in.get("/document-storage").status_code == 401


def test_http_errors_use_response_envelope(client):
    assert client.get("/document-storage").json() == {"success": False, "message": "Unauthorized"}
    response = client.get("/no-such-route")
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Not Found"}


def test_validation_errors_use_response_envelope(logged_in):
    response = logged_in.post("/document-storage/folders", json={"name": "a/b"})
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Invalid request"
    assert len(body["errors"]) == 1
    assert body["errors"][0].startswith("name: ")


def test_upload_runs_in_threadpool(logged_in):
    with patch("app.routers.documents.run_in_threadpool", wraps=run_in_threadpool) as offload:
        upload(logged_in, "spec.pdf")
    assert offload.call_count == 1


def test_upload_too_large_is_rejected_before_reading(logged_in, test_settings):
    with patch("starlette.datastructures.UploadFile.read") as read:
        response = logged_in.post(
            "/document-storage/files",
            files=[
                ("files", ("a.bin", b"x" * (test_settings.max_upload_size_bytes // 2), None)),
                ("files", ("b.bin", b"x" * (test_settings.max_upload_size_bytes // 2 + 1), None)),
            ],
        )
    assert response.status_code == 413
    assert response.json()["success"] is False
    read.assert_not_called()
