"""
End-to-end tests of the HTTP and WebSocket surface, with fake engine binaries.

Run with: pytest flaxeo/backend/test_api.py
"""

import json
import os
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from flaxeo.backend.main import create_app
from flaxeo.backend.services.container import Services
from flaxeo.backend.services.png_params import format_parameters, save_png_with_parameters
from flaxeo.backend.services.test_png_params import png_bytes


@pytest.fixture
def services(app_paths):
    return Services.build(app_paths, log_capacity=200, ready_timeout=10)


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services, tunnels=[])) as test_client:
        yield test_client


def test_root_and_health(client):
    assert client.get("/api").json()["name"] == "Flaxeo"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["server_running"] is False
    assert health["cli_state"] == "idle"


def test_models_catalog(client, app_paths):
    (app_paths.models_dir / "diffusion" / "flux1-dev-q4.gguf").write_bytes(b"")
    (app_paths.models_dir / "diffusion" / ".hidden").write_bytes(b"")
    (app_paths.models_dir / "clip" / "clip_g.safetensors").write_bytes(b"")

    catalog = client.get("/api/models").json()

    assert catalog["diffusion"] == ["flux1-dev-q4.gguf"]
    assert catalog["clip"] == catalog["clipG"] == ["clip_g.safetensors"]
    assert catalog["loras"] == []


def test_generate_without_model_is_rejected(client, services):
    response = client.post("/api/generate-cli", json={"prompt": "a cat"})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "MODEL_REQUIRED"
    assert services.cli.is_idle


def test_malformed_json_is_rejected(client):
    response = client.post(
        "/api/generate-cli", content=b"{oops", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_REQUEST"


def test_multipart_generation(client, app_paths, install_engine):
    install_engine(cli_mode="ok")

    response = client.post(
        "/api/generate-cli",
        data={"diffusionModel": "sd15.safetensors", "prompt": "a cat", "steps": "4", "vaeTiling": "true"},
        files={"kontextRefImage": ("ref.png", png_bytes(), "image/png")},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["message"] == "Complete"
    assert len(body["filenames"]) == 1
    assert (app_paths.output_dir / body["filenames"][0]).read_bytes() == b"artifact"
    # The uploaded reference was only needed for the run
    assert not any(p.name.startswith("kontext") for p in app_paths.temp_dir.rglob("*"))
    assert client.get("/api/gallery").json() == body["filenames"]


def test_failed_generation_reports_output(client, install_engine):
    install_engine(cli_mode="fail")

    response = client.post("/api/generate-cli", json={"diffusionModel": "sd15.safetensors"})

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "boom" in body["output"]


def test_inpaint_requires_init_image(client, install_engine):
    install_engine()
    response = client.post("/api/inpaint", data={"diffusionModel": "sd15.safetensors"})
    assert response.status_code == 400
    assert response.json()["error"] == "INIT_IMAGE_REQUIRED"


def test_cancel_when_idle(client):
    assert client.post("/api/cancel-cli").json() == {"message": "No CLI process running"}


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.mark.parametrize("how", ["query", "body"])
def test_force_cancel_kills_process_ignoring_sigterm(client, install_engine, how):
    install_engine(cli_mode="stubborn")

    with ThreadPoolExecutor(max_workers=1) as pool:
        pending = pool.submit(client.post, "/api/generate-cli", json={"diffusionModel": "sd15.safetensors"})
        assert wait_for(lambda: any("ignoring SIGTERM" in line for line in client.get("/api/logs").json()["logs"]))

        if how == "query":
            cancelled = client.post("/api/cancel-cli", params={"force": "true"})
        else:
            cancelled = client.post("/api/cancel-cli", json={"force": True})
        assert cancelled.json() == {"message": "Cancelled"}

        response = pending.result(timeout=10)

    assert response.json() == {"message": "Cancelled"}
    assert client.get("/health").json()["cli_state"] != "running"


def test_gallery_newest_first_and_delete(client, app_paths):
    for age, name in enumerate(["newest.png", "middle.mp4", "oldest.jpg"]):
        path = app_paths.output_dir / name
        path.write_bytes(b"x")
        os.utime(path, (1_700_000_000 - age * 60, 1_700_000_000 - age * 60))
    (app_paths.output_dir / "notes.txt").write_text("skip me")

    assert client.get("/api/gallery").json() == ["newest.png", "middle.mp4", "oldest.jpg"]

    assert client.post("/api/delete", json={"filename": "middle.mp4"}).json() == {"message": "Deleted"}
    assert not (app_paths.output_dir / "middle.mp4").exists()


def test_delete_outside_gallery_is_denied(client, app_paths):
    response = client.post("/api/delete", json={"filename": "../backend-config.json"})

    assert response.status_code == 400
    assert response.json()["error"] == "ACCESS_DENIED"


def test_image_params(client, app_paths):
    parameters = format_parameters(prompt="a red fox", negative_prompt="blurry", steps=20, cfg_scale=7, seed=7,
                                   width=8, height=8)
    save_png_with_parameters(png_bytes(), app_paths.output_dir / "fox.png", parameters)

    params = client.post("/api/image/params", json={"path": "fox.png"}).json()

    assert params["prompt"] == "a red fox"
    assert params["negativePrompt"] == "blurry"
    assert params["steps"] == 20
    assert params["seed"] == 7
    assert params["width"] == 8

    missing = client.post("/api/image/params", json={})
    assert missing.status_code == 400
    assert missing.json()["error"] == "PATH_REQUIRED"


def test_open_folder_rejects_unknown_folder(client):
    response = client.post("/api/open-folder", json={"folder": "/etc"})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_FOLDER"


def test_log_paging(client, services):
    for i in range(5):
        services.log_buffer.append("cli", f"step {i}\n")

    page = client.get("/api/logs", params={"since": 0, "limit": 2}).json()
    assert page["logs"] == ["step 0\n", "step 1\n"]
    assert page["hasMore"] is True
    assert page["next"] == 2

    rest = client.get("/api/logs", params={"since": page["next"], "limit": 10}).json()
    assert rest["logs"] == ["step 2\n", "step 3\n", "step 4\n"]
    assert rest["hasMore"] is False

    assert client.post("/api/logs/clear").json() == {"success": True}
    assert client.get("/api/logs").json()["logs"] == []


def test_log_query_validation(client):
    response = client.get("/api/logs", params={"limit": 0})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_REQUEST"


def test_server_lifecycle(client, install_engine):
    install_engine(server_mode="server")

    assert client.post("/api/stop").json()["error"] == "SERVER_NOT_RUNNING"

    started = client.post("/api/start", json={"diffusionModel": "flux.gguf", "port": 4321})
    assert started.status_code == 200, started.text
    assert started.json()["port"] == 4321

    again = client.post("/api/start", json={"diffusionModel": "flux.gguf"})
    assert again.status_code == 409
    assert again.json()["error"] == "SERVER_RUNNING"

    status = client.get("/api/status").json()
    assert status["running"] is True
    assert any("listening on" in line for line in status["logs"])

    assert client.post("/api/stop").json() == {"message": "Stopped"}
    assert client.get("/api/status").json()["running"] is False


def test_server_generate_requires_server(client):
    response = client.post("/api/generate", json={"prompt": "a cat"})
    assert response.status_code == 400
    assert response.json()["error"] == "SERVER_NOT_RUNNING"


def test_preview_image(client, app_paths):
    missing = client.get("/api/preview-image")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NO_PREVIEW"

    app_paths.preview_path.write_bytes(png_bytes())
    response = client.get("/api/preview-image")
    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"


def test_backend_config_persists(client, app_paths):
    response = client.post("/api/backend/config", json={"activeVersion": "custom", "theme": "dark"})
    assert response.status_code == 200

    saved = json.loads(app_paths.config_file.read_text())
    assert saved["theme"] == "dark"
    assert client.get("/api/backend/config").json()["activeVersion"] == "custom"


def test_backend_set_active_unknown_version(client):
    response = client.post("/api/backend/set-active", json={"version": "master-404"})
    assert response.status_code == 400
    assert response.json()["error"] == "VERSION_NOT_FOUND"


def test_network_status_and_toggle(client):
    status = client.get("/api/network/status").json()
    assert status["ngrok"]["enabled"] is False

    response = client.post("/api/network/toggle", json={"service": "tor", "action": "start"})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SERVICE"


def test_websocket_ping_and_status_command(client):
    with client.websocket_connect("/ws") as ws:
        welcome = ws.receive_json()
        assert welcome["type"] == "connection_established"
        assert welcome["subscriptions"] == ["log", "process_state"]

        ws.send_json({"type": "ping", "timestamp": "t0"})
        pong = ws.receive_json()
        assert pong["type"] == "pong"
        assert pong["client_timestamp"] == "t0"

        ws.send_json({"type": "command", "command": "status"})
        result = ws.receive_json()
        assert result["type"] == "command_result"
        assert result["result"]["running"] is False
