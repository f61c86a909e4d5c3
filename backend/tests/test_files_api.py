import math

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from filevault.main import create_app
from filevault.repositories.file_repository import file_repository

from conftest import build_settings, register_and_login

MIB = 1024 * 1024
PNG_HEADER = b"\x89PNG\r\n\x1a\n"


def png_bytes(size: int) -> bytes:
    return PNG_HEADER + b"\x00" * (size - len(PNG_HEADER))


def upload(client, headers, data: bytes, filename="photo.png", content_type="image/png"):
    return client.post(
        "/api/files/upload",
        headers=headers,
        files={"file": (filename, data, content_type)},
    )


def test_upload_returns_public_projection(client, auth_headers):
    response = upload(client, auth_headers, png_bytes(3 * MIB))

    assert response.status_code == 201
    body = response.json()
    assert set(body) == {"id", "filename", "originalname", "contentType", "size", "uploadDate"}
    assert body["size"] == 3145728
    assert body["originalname"] == "photo.png"
    assert body["contentType"] == "image/png"
    assert body["filename"].endswith(".png")
    assert "photo" not in body["filename"]


def test_upload_then_fetch_round_trip(client, auth_headers):
    payload = png_bytes(700 * 1024)
    file_id = upload(client, auth_headers, payload, filename="holiday.png").json()["id"]

    response = client.get(f"/api/files/{file_id}", headers=auth_headers)

    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["content-type"] == "image/png"
    assert response.headers["content-disposition"] == 'inline; filename="holiday.png"'
    assert response.headers["content-length"] == str(len(payload))


def test_non_ascii_filename_gets_rfc5987_disposition(client, auth_headers):
    file_id = upload(client, auth_headers, png_bytes(64), filename="café.png").json()["id"]

    response = client.get(f"/api/files/{file_id}", headers=auth_headers)

    disposition = response.headers["content-disposition"]
    assert disposition.startswith('inline; filename="caf.png"')
    assert "filename*=UTF-8''caf%C3%A9.png" in disposition


def test_oversize_upload_rejected(client, auth_headers):
    response = upload(client, auth_headers, png_bytes(6 * MIB))

    assert response.status_code == 400
    assert "too large" in response.json()["message"]
    assert client.app.state.blob_store.list_blobs() == []


def test_upload_size_limit_is_inclusive(client, auth_headers):
    at_limit = upload(client, auth_headers, png_bytes(5 * MIB), filename="at-limit.png")
    over_limit = upload(client, auth_headers, png_bytes(5 * MIB + 1), filename="over-limit.png")

    assert at_limit.status_code == 201
    assert at_limit.json()["size"] == 5 * MIB
    assert over_limit.status_code == 400
    assert "too large" in over_limit.json()["message"]
    assert [key for key, _ in client.app.state.blob_store.list_blobs()] == [at_limit.json()["filename"]]


def test_disallowed_type_rejected(client, auth_headers):
    response = upload(client, auth_headers, b"just text", filename="notes.txt", content_type="text/plain")

    assert response.status_code == 400
    assert response.json()["message"].startswith("File type not supported")


def test_missing_file_field_rejected(client, auth_headers):
    response = client.post("/api/files/upload", headers=auth_headers, data={"other": "value"})

    assert response.status_code == 400
    assert response.json() == {"message": "Please upload a file"}


def test_pagination(client, auth_headers):
    total, limit = 5, 2
    for index in range(total):
        assert upload(client, auth_headers, png_bytes(32), filename=f"p{index}.png").status_code == 201

    first = client.get("/api/files", headers=auth_headers, params={"page": 1, "limit": limit}).json()
    assert len(first["files"]) == limit
    assert first["pagination"] == {
        "totalFiles": total,
        "totalPages": math.ceil(total / limit),
        "currentPage": 1,
        "limit": limit,
    }

    past_end = client.get(
        "/api/files", headers=auth_headers,
        params={"page": math.ceil(total / limit) + 1, "limit": limit},
    )
    assert past_end.status_code == 200
    assert past_end.json()["files"] == []
    assert past_end.json()["pagination"]["totalFiles"] == total


def test_listing_defaults_and_bad_paging_params(client, auth_headers):
    upload(client, auth_headers, png_bytes(32))

    body = client.get("/api/files", headers=auth_headers, params={"page": "abc", "limit": "0"}).json()

    assert body["pagination"]["currentPage"] == 1
    assert body["pagination"]["limit"] == 10
    assert len(body["files"]) == 1
    assert body["files"][0]["originalname"] == "photo.png"


def test_owner_isolation(client, auth_headers, other_auth_headers):
    file_id = upload(client, auth_headers, png_bytes(32)).json()["id"]

    listing = client.get("/api/files", headers=other_auth_headers).json()
    assert listing["files"] == []
    assert listing["pagination"]["totalFiles"] == 0

    assert client.get(f"/api/files/{file_id}", headers=other_auth_headers).status_code == 404
    assert client.delete(f"/api/files/{file_id}", headers=other_auth_headers).status_code == 404
    # Still there for its owner
    assert client.get(f"/api/files/{file_id}", headers=auth_headers).status_code == 200


def test_delete_then_fetch_and_delete_again(client, auth_headers):
    file_id = upload(client, auth_headers, png_bytes(32)).json()["id"]

    deleted = client.delete(f"/api/files/{file_id}", headers=auth_headers)
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "File deleted successfully"}

    assert client.get(f"/api/files/{file_id}", headers=auth_headers).status_code == 404
    again = client.delete(f"/api/files/{file_id}", headers=auth_headers)
    assert again.status_code == 404
    assert again.json() == {"message": "File not found"}


def test_missing_blob_surfaces_as_server_error(client, auth_headers):
    body = upload(client, auth_headers, png_bytes(32)).json()
    client.app.state.blob_store.delete_blob(body["filename"])

    fetched = client.get(f"/api/files/{body['id']}", headers=auth_headers)
    assert fetched.status_code == 500
    assert fetched.json()["message"] == "Something went wrong on the server"
    assert "InconsistencyError" in fetched.json()["stack"]

    deleted = client.delete(f"/api/files/{body['id']}", headers=auth_headers)
    assert deleted.status_code == 500
    # The record is kept so the drift stays visible
    assert client.get("/api/files", headers=auth_headers).json()["pagination"]["totalFiles"] == 1


def test_production_hides_stack(tmp_path):
    app = create_app(build_settings(tmp_path, APP_ENV="production"))
    with TestClient(app) as client:
        headers = register_and_login(client, "carol@example.com")
        body = upload(client, headers, png_bytes(32)).json()
        client.app.state.blob_store.delete_blob(body["filename"])

        response = client.get(f"/api/files/{body['id']}", headers=headers)

    assert response.status_code == 500
    assert response.json() == {"message": "Something went wrong on the server"}


def _database_down(*args, **kwargs):
    raise OperationalError("SELECT", {}, Exception("database is down"))


def test_unexpected_error_uses_json_envelope(tmp_path, monkeypatch):
    app = create_app(build_settings(tmp_path))
    with TestClient(app, raise_server_exceptions=False) as client:
        headers = register_and_login(client, "ivan@example.com")
        monkeypatch.setattr(file_repository, "get_by_id", _database_down)

        response = client.get("/api/files/abc", headers=headers)

    assert response.status_code == 500
    assert response.headers["content-type"] == "application/json"
    body = response.json()
    assert body["message"] == "Something went wrong on the server"
    assert "OperationalError" in body["stack"]


def test_unexpected_error_hides_stack_in_production(tmp_path, monkeypatch):
    app = create_app(build_settings(tmp_path, APP_ENV="production"))
    with TestClient(app, raise_server_exceptions=False) as client:
        headers = register_and_login(client, "judy@example.com")
        monkeypatch.setattr(file_repository, "get_by_id", _database_down)

        response = client.delete("/api/files/abc", headers=headers)

    assert response.status_code == 500
    assert response.json() == {"message": "Something went wrong on the server"}


def test_file_routes_require_auth(client):
    assert client.get("/api/files").status_code == 401
    assert client.post("/api/files/upload", files={"file": ("a.png", b"x", "image/png")}).status_code == 401
    assert client.get("/api/files/abc").status_code == 401
    assert client.delete("/api/files/abc").status_code == 401

    bad_token = client.get("/api/files", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad_token.status_code == 401
    assert "message" in bad_token.json()


def test_public_route_disabled_by_default(client, auth_headers):
    body = upload(client, auth_headers, png_bytes(32)).json()

    assert client.get(f"/api/files/public/{body['filename']}").status_code == 404


def test_public_route_when_enabled(tmp_path):
    app = create_app(build_settings(tmp_path, PUBLIC_FILE_ACCESS=True))
    with TestClient(app) as client:
        headers = register_and_login(client, "dave@example.com")
        payload = png_bytes(128)
        body = upload(client, headers, payload).json()

        public = client.get(f"/api/files/public/{body['filename']}")
        unknown = client.get("/api/files/public/0-0000000000000000.png")

    assert public.status_code == 200
    assert public.content == payload
    assert unknown.status_code == 404
