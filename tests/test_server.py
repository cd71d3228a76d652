"""EditorServer HTTP/SSE endpoint tests."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import tempfile
import warnings
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from conftest import fake_runner_argv, wait_for
from sim_config_editor.config import Config
from sim_config_editor.events import RunRequest
from sim_config_editor.runtime.process_runner import IS_WINDOWS
from sim_config_editor.server import REQ_ID, EditorServer, build_run_spec


def parse_frames(body: str) -> list[dict[str, Any]]:
    """Decode ``data:`` frames, skipping keepalive comments."""
    events = []
    for frame in body.split("\n\n"):
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


async def read_frame(resp) -> dict[str, Any]:
    while True:
        raw = await asyncio.wait_for(resp.content.readuntil(b"\n\n"), timeout=5)
        frame = raw.decode("utf-8")
        if frame.startswith("data: "):
            return json.loads(frame[len("data: "):].strip())


class EditorServerTestCase(AioHTTPTestCase):
    runner_options: tuple[str, ...] = ("--step", "stdout:running {config}\n")

    async def get_application(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.config_dir = self.tmpdir / "configs"
        self.config_dir.mkdir()
        (self.config_dir / "demo.json").write_text('{"track": {"distance": 2000}}', encoding="utf-8")
        (self.config_dir / "config.example.json").write_text("{}", encoding="utf-8")

        self.config = Config(
            config_dir=self.config_dir,
            runner=self.runner_argv(),
            runner_cwd=self.tmpdir,
            runner_artifact=self.make_artifact(),
            run_timeout=10.0,
            debounce=0.05,
            watch_interval=0.05,
        )
        self.editor = EditorServer(self.config)
        return self.editor.app

    def runner_argv(self) -> list[str]:
        return fake_runner_argv(*self.runner_options)

    def make_artifact(self) -> Path | None:
        return None

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class TestRunEndpoint(EditorServerTestCase):
    async def test_run_streams_started_output_done(self):
        resp = await self.client.get("/api/run", params={"configFile": "demo.json"})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Cache-Control"] == "no-cache"

        events = parse_frames(await resp.text())

        assert events == [
            {"type": "started"},
            {"type": "output", "data": "running demo.json\n"},
            {"type": "done", "code": 0, "output": "running demo.json\n"},
        ]
        assert self.editor.registry.active_count == 0

    async def test_config_file_is_trimmed(self):
        resp = await self.client.get("/api/run", params={"configFile": "  demo.json  "})
        events = parse_frames(await resp.text())

        assert events[1] == {"type": "output", "data": "running demo.json\n"}

    async def test_missing_config_file_parameter(self):
        resp = await self.client.get("/api/run")
        assert resp.status == 400
        assert await resp.json() == {"error": "configFile parameter required"}

    async def test_blank_config_file_parameter(self):
        resp = await self.client.get("/api/run", params={"configFile": "   "})
        assert resp.status == 400


class TestRunClientDisconnect(EditorServerTestCase):
    """Closing the SSE connection mid-run terminates the runner."""

    def runner_argv(self) -> list[str]:
        self.marker = self.tmpdir / "marker"
        return fake_runner_argv("--step", "stdout:ready\n", "--hang", "--marker", str(self.marker))

    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_client_disconnect_terminates_runner(self):
        resp = await self.client.get("/api/run", params={"configFile": "demo.json"})
        assert await read_frame(resp) == {"type": "started"}
        assert await read_frame(resp) == {"type": "output", "data": "ready\n"}
        assert self.editor.registry.active_count == 1

        resp.close()

        assert await wait_for(lambda: len(self.editor.registry) == 0, timeout=10)
        assert self.editor.registry.active_count == 0
        assert self.marker.read_text().splitlines() == ["SIGTERM"]


class TestRunWithoutArtifact(EditorServerTestCase):
    def make_artifact(self) -> Path | None:
        return self.tmpdir / "cli.js"

    async def test_missing_artifact_reports_error(self):
        resp = await self.client.get("/api/run", params={"configFile": "demo.json"})
        events = parse_frames(await resp.text())

        assert [e["type"] for e in events] == ["started", "error"]
        assert "Runner not built" in events[1]["error"]


class TestRunWithoutOutput(EditorServerTestCase):
    runner_options = ("--exit-code", "1")

    async def test_silent_failure_reports_error(self):
        resp = await self.client.get("/api/run", params={"configFile": "demo.json"})
        events = parse_frames(await resp.text())

        assert [e["type"] for e in events] == ["started", "error"]
        assert "without producing output" in events[1]["error"]
        assert "Exit code: 1" in events[1]["error"]


class TestConfigEndpoints(EditorServerTestCase):
    async def test_request_id_uses_typed_key(self):
        assert isinstance(REQ_ID, web.RequestKey)
        with warnings.catch_warnings():
            warnings.simplefilter("error", web.NotAppKeyWarning)
            resp = await self.client.get("/health")
        assert resp.status == 200

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["active_runs"] == 0

    async def test_list_configs_excludes_example(self):
        (self.config_dir / "notes.txt").write_text("x")
        (self.config_dir / "race.json").write_text("{}")

        resp = await self.client.get("/api/configs")

        assert resp.status == 200
        assert await resp.json() == ["demo.json", "race.json"]

    async def test_get_config_starts_watching(self):
        resp = await self.client.get("/api/config/demo.json")

        assert resp.status == 200
        assert await resp.json() == {"track": {"distance": 2000}}
        assert self.editor.watcher.is_watching("demo.json")

    async def test_get_missing_config(self):
        resp = await self.client.get("/api/config/missing.json")
        assert resp.status == 404
        assert "not found" in (await resp.json())["error"]

    async def test_get_hidden_name_rejected(self):
        resp = await self.client.get("/api/config/.secret.json")
        assert resp.status == 400

    async def test_save_config_pretty_prints(self):
        resp = await self.client.post("/api/config/demo.json", json={"track": {"distance": 2500}})

        assert resp.status == 200
        assert await resp.json() == {"success": True}
        text = (self.config_dir / "demo.json").read_text(encoding="utf-8")
        assert json.loads(text) == {"track": {"distance": 2500}}
        assert '\n    "track"' in text

    async def test_save_invalid_json_body(self):
        resp = await self.client.post(
            "/api/config/demo.json",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

    async def test_duplicate_config(self):
        resp = await self.client.post(
            "/api/config/demo.json/duplicate", json={"newName": " copy.json "}
        )

        assert resp.status == 200
        assert (self.config_dir / "copy.json").read_bytes() == (
            self.config_dir / "demo.json"
        ).read_bytes()

    async def test_duplicate_requires_new_name(self):
        resp = await self.client.post("/api/config/demo.json/duplicate", json={})
        assert resp.status == 400

        resp = await self.client.post("/api/config/demo.json/duplicate", json={"newName": "  "})
        assert resp.status == 400

    async def test_duplicate_missing_source(self):
        resp = await self.client.post(
            "/api/config/missing.json/duplicate", json={"newName": "copy.json"}
        )
        assert resp.status == 404

    async def test_duplicate_existing_target(self):
        (self.config_dir / "copy.json").write_text("{}")
        resp = await self.client.post(
            "/api/config/demo.json/duplicate", json={"newName": "copy.json"}
        )
        assert resp.status == 409


class TestEventsEndpoint(EditorServerTestCase):
    async def test_save_notifies_subscribers(self):
        first = await self.client.get("/api/events")
        second = await self.client.get("/api/events")
        try:
            assert await read_frame(first) == {"type": "connected"}
            assert await read_frame(second) == {"type": "connected"}

            resp = await self.client.post("/api/config/demo.json", json={"laps": 3})
            assert resp.status == 200

            expected = {"type": "fileChanged", "filename": "demo.json"}
            assert await read_frame(first) == expected
            assert await read_frame(second) == expected
        finally:
            first.close()
            second.close()

    async def test_duplicate_notifies_with_target_name(self):
        events = await self.client.get("/api/events")
        try:
            assert await read_frame(events) == {"type": "connected"}

            await self.client.post("/api/config/demo.json/duplicate", json={"newName": "copy.json"})

            assert await read_frame(events) == {"type": "fileChanged", "filename": "copy.json"}
        finally:
            events.close()

    async def test_external_edit_notifies(self):
        events = await self.client.get("/api/events")
        try:
            assert await read_frame(events) == {"type": "connected"}
            await self.client.get("/api/config/demo.json")

            (self.config_dir / "demo.json").write_text('{"track": {"distance": 3000, "laps": 2}}')

            assert await read_frame(events) == {"type": "fileChanged", "filename": "demo.json"}
        finally:
            events.close()


class TestBuildRunSpec:
    def test_config_identifier_is_last_argument(self, tmp_path: Path):
        config = Config(runner=["node", "cli.js"], runner_cwd=tmp_path)

        spec = build_run_spec(config, RunRequest(config_identifier="demo.json"))

        assert spec.argv == ["node", "cli.js", "demo.json"]
        assert spec.cwd == tmp_path
        assert spec.env["NODE_ENV"] == os.environ.get("NODE_ENV", "production")
