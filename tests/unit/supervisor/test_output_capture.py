"""Tests for per-service output files."""

import asyncio

import pytest

from devherd.supervisor.supervisor_helpers import follow, open_service_log, service_log_path, tail_lines, truncate_logs


def test_open_service_log_writes_banner(tmp_path):
    with open_service_log(tmp_path, "api", attempt=2, command=("uvicorn", "app")) as handle:
        handle.write(b"hello\n")

    lines = service_log_path(tmp_path, "api").read_text().splitlines()
    assert lines[0].startswith("--- devherd: api attempt 2 at ")
    assert lines[0].endswith(": uvicorn app")
    assert lines[1] == "hello"


def test_tail_lines(tmp_path):
    path = tmp_path / "api.log"
    path.write_text("\n".join(str(i) for i in range(10)) + "\n")

    assert tail_lines(path, 3) == ["7", "8", "9"]
    assert len(tail_lines(path, 0)) == 10
    assert tail_lines(tmp_path / "missing.log", 5) == []


def test_truncate_logs(tmp_path):
    path = service_log_path(tmp_path, "api")
    path.write_text("old output\n")

    truncate_logs(tmp_path, ["api", "never-ran"])

    assert path.read_text() == ""


@pytest.mark.asyncio
async def test_follow_yields_appended_text(tmp_path):
    path = tmp_path / "api.log"
    path.write_text("before\n")
    stream = follow(path, poll_interval=0.01)

    async def append_later():
        await asyncio.sleep(0.05)
        with open(path, "a") as handle:
            handle.write("after\n")

    writer = asyncio.create_task(append_later())
    chunk = await asyncio.wait_for(stream.__anext__(), timeout=2.0)
    await writer
    await stream.aclose()

    assert chunk == "after\n"


@pytest.mark.asyncio
async def test_follow_joins_character_split_across_reads(tmp_path):
    path = tmp_path / "api.log"
    path.write_bytes(b"")
    stream = follow(path, poll_interval=0.01)

    async def append_in_halves():
        await asyncio.sleep(0.05)
        with open(path, "ab") as handle:
            handle.write("caf".encode() + "é".encode()[:1])
        await asyncio.sleep(0.1)
        with open(path, "ab") as handle:
            handle.write("é".encode()[1:] + b"\n")

    writer = asyncio.create_task(append_in_halves())
    received = ""
    while not received.endswith("\n"):
        received += await asyncio.wait_for(stream.__anext__(), timeout=2.0)
    await writer
    await stream.aclose()

    assert received == "café\n"
    assert "\ufffd" not in received
