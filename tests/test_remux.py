from __future__ import annotations

import asyncio
from pathlib import Path

from screenrec import remux


class _FakeProc:
    def __init__(self, returncode=0, stderr=b"", delay=0.0, on_run=None):
        self.returncode = None
        self._rc = returncode
        self._stderr = stderr
        self._delay = delay
        self._on_run = on_run
        self.killed = False

    async def communicate(self):
        if self._on_run is not None:
            self._on_run()
        await asyncio.sleep(self._delay)
        self.returncode = self._rc
        return b"", self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


def _patch_exec(monkeypatch, make_proc):
    calls: list[list[str]] = []
    procs: list[_FakeProc] = []

    async def fake_exec(*cmd, **kwargs):
        calls.append(list(cmd))
        proc = make_proc(list(cmd))
        procs.append(proc)
        return proc

    monkeypatch.setattr(remux.asyncio, "create_subprocess_exec", fake_exec)
    return calls, procs


def test_repaired_path_naming():
    assert remux.repaired_path(Path("/data/a/recording-screen1-1.webm")) == Path(
        "/data/a/repaired/recording-screen1-1.fixed.webm"
    )


def test_fix_duration_swaps_in_remuxed_copy(tmp_path, monkeypatch):
    source = tmp_path / "rec.webm"
    source.write_bytes(b"original")
    calls, _ = _patch_exec(
        monkeypatch,
        lambda cmd: _FakeProc(on_run=lambda: Path(cmd[-1]).write_bytes(b"remuxed")),
    )
    runner = remux.RemuxRunner("/usr/bin/ffmpeg", timeout=5)

    result = asyncio.run(runner.fix_duration(source))

    assert result.ok
    assert source.read_bytes() == b"remuxed"
    assert not (tmp_path / "rec.fixing.webm").exists()
    cmd = calls[0]
    assert cmd[0] == "/usr/bin/ffmpeg"
    assert cmd[cmd.index("-fflags") + 1] == "+genpts"
    assert cmd[-1].endswith("rec.fixing.webm")


def test_fix_duration_failure_leaves_original(tmp_path, monkeypatch):
    source = tmp_path / "rec.webm"
    source.write_bytes(b"original")
    _patch_exec(monkeypatch, lambda cmd: _FakeProc(returncode=1, stderr=b"Invalid data"))

    result = asyncio.run(remux.RemuxRunner("ffmpeg").fix_duration(source))

    assert not result.ok
    assert "Invalid data" in result.error
    assert source.read_bytes() == b"original"


def test_concat_writes_and_removes_list_file(tmp_path, monkeypatch):
    inputs = [tmp_path / "a.webm", tmp_path / "it's.webm"]
    for path in inputs:
        path.write_bytes(b"x")
    output = tmp_path / "merged.webm"
    listing: list[str] = []

    def _capture(cmd):
        list_path = Path(cmd[cmd.index("-i") + 1])
        return _FakeProc(on_run=lambda: listing.append(list_path.read_text()))

    calls, _ = _patch_exec(monkeypatch, _capture)

    result = asyncio.run(remux.RemuxRunner("ffmpeg").concat(inputs, output))

    assert result.ok and result.output == output
    cmd = calls[0]
    assert cmd[cmd.index("-f") + 1] == "concat"
    assert cmd[cmd.index("-safe") + 1] == "0"
    assert listing[0].splitlines()[1] == f"file '{tmp_path.resolve()}/it'\\''s.webm'"
    assert not list(tmp_path.glob("*.concat.txt"))


def test_repair_uses_error_tolerant_flags(tmp_path, monkeypatch):
    source = tmp_path / "broken.webm"
    source.write_bytes(b"x")
    calls, _ = _patch_exec(monkeypatch, lambda cmd: _FakeProc())

    result = asyncio.run(remux.RemuxRunner("ffmpeg").repair(source))

    assert result.ok
    assert result.output == tmp_path / "repaired" / "broken.fixed.webm"
    cmd = calls[0]
    assert cmd[cmd.index("-fflags") + 1] == "+genpts+igndts"
    assert cmd[cmd.index("-err_detect") + 1] == "ignore_err"
    assert cmd[cmd.index("-avoid_negative_ts") + 1] == "make_zero"


def test_hung_ffmpeg_is_killed_after_timeout(tmp_path, monkeypatch):
    _, procs = _patch_exec(monkeypatch, lambda cmd: _FakeProc(delay=10))
    runner = remux.RemuxRunner("ffmpeg", timeout=0.05)

    result = asyncio.run(runner.repair(tmp_path / "slow.webm"))

    assert not result.ok
    assert result.returncode is None
    assert "exceeded" in result.error
    assert procs[0].killed


def test_missing_binary_is_reported(tmp_path, monkeypatch):
    async def fake_exec(*cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(remux.asyncio, "create_subprocess_exec", fake_exec)

    result = asyncio.run(remux.RemuxRunner("/nope/ffmpeg").repair(tmp_path / "a.webm"))

    assert not result.ok
    assert result.returncode == 127
