from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
import uuid
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings, get_settings
from instance_manager import main, new_instance_manager

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses the POSIX claim and endpoint")


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def identity() -> str:
    return f"cli-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("INSTANCE_RUNTIME_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "logs" / "instance_manager.log"))
    monkeypatch.delenv("INSTANCE_ID", raising=False)
    monkeypatch.delenv("ENABLE_SINGLE_INSTANCE", raising=False)
    yield tmp_path
    get_settings.cache_clear()


@pytest.fixture
def primary(identity, cli_env):
    settings = Settings(INSTANCE_RUNTIME_DIR=str(cli_env), LISTENER_POLL_INTERVAL=0.05)
    manager = new_instance_manager(identity, settings)
    assert manager.check_another_instance(exit_on_found=False) is False
    messages: list[str] = []
    manager.on_new_instance_with_message(messages.append)
    manager.wait_for_other_instances(run_in_background=True)
    yield manager, messages
    manager.stop()


def test_secondary_forwards_arguments_and_exits(primary, identity) -> None:
    _, messages = primary

    with pytest.raises(SystemExit) as exc_info:
        main(["--id", identity, "open", "notes.md"])

    assert exc_info.value.code == 0
    assert _wait_for(lambda: messages == ["open notes.md"])


def test_secondary_with_no_exit_returns_zero(primary, identity, capsys) -> None:
    _, messages = primary

    assert main(["--id", identity, "--no-exit", "ping"]) == 0

    assert "already running" in capsys.readouterr().out
    assert _wait_for(lambda: messages == ["ping"])


def test_identity_is_required(cli_env) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main([])

    assert exc_info.value.code == 2


def test_identity_read_from_environment(primary, identity, monkeypatch) -> None:
    _, messages = primary
    monkeypatch.setenv("INSTANCE_ID", identity)

    assert main(["--no-exit", "from-env"]) == 0
    assert _wait_for(lambda: messages == ["from-env"])


def test_disabled_single_instance_skips_claim(cli_env, identity, monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_SINGLE_INSTANCE", "false")

    assert main(["--id", identity]) == 0
    assert not (cli_env / f"{identity}Mutex").exists()


@pytest.mark.parametrize("extra_args", [[], ["--background"]])
def test_primary_process_prints_forwarded_messages(tmp_path, identity, extra_args) -> None:
    env = os.environ.copy()
    env["PYTHONPATH"] = str(PROJECT_ROOT)
    env["INSTANCE_RUNTIME_DIR"] = str(tmp_path)
    env["LOG_FILE"] = str(tmp_path / "instance_manager.log")
    env["LISTENER_POLL_INTERVAL"] = "0.05"
    env.pop("INSTANCE_ID", None)
    env.pop("FORCE_COLOR", None)
    env["NO_COLOR"] = "1"

    primary = subprocess.Popen(
        [sys.executable, "-m", "instance_manager", "--id", identity, *extra_args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
        cwd=str(tmp_path),
    )
    try:
        start = time.time()
        while True:
            line = primary.stdout.readline()
            if "Waiting for other instances" in line:
                break
            if primary.poll() is not None:
                raise AssertionError(f"Primary exited early: {primary.stdout.read()} {primary.stderr.read()}")
            if time.time() - start > 10:
                raise AssertionError("Primary did not start in time")

        secondary = subprocess.run(
            [sys.executable, "-m", "instance_manager", "--id", identity, "hello"],
            capture_output=True,
            text=True,
            env=env,
            cwd=str(tmp_path),
            timeout=15,
        )
        assert secondary.returncode == 0, secondary.stderr

        seen: list[str] = []
        while not any("Message: hello" in line for line in seen):
            line = primary.stdout.readline()
            if not line:
                break
            seen.append(line)
        assert any("New instance launched" in line for line in seen)
        assert any("Message: hello" in line for line in seen)

        primary.send_signal(signal.SIGTERM)
        out, err = primary.communicate(timeout=10)
        assert primary.returncode == 0, err
        assert "Stopped listening" in out
    finally:
        if primary.poll() is None:
            primary.kill()
            primary.wait(timeout=5)


def test_background_primary_returns_when_listener_exits(cli_env, identity, monkeypatch) -> None:
    import instance_manager
    from instance_manager.manager import InstanceManager

    # Listener thread that ends immediately, as after a crash
    monkeypatch.setattr(InstanceManager, "wait_for_other_instances", lambda self, run_in_background=False: None)
    monkeypatch.setattr(instance_manager, "_install_signal_handlers", lambda *args: None)

    start = time.monotonic()
    assert main(["--id", identity, "--background"]) == 0
    assert time.monotonic() - start < 5
