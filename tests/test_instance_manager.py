from __future__ import annotations

import os
import subprocess
import sys
import textwrap
import time
import uuid
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings
from instance_manager import InstanceManager, new_instance_manager

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
    return f"test-{uuid.uuid4().hex}"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        INSTANCE_RUNTIME_DIR=str(tmp_path),
        LISTENER_POLL_INTERVAL=0.05,
        CHANNEL_READ_TIMEOUT=1.0,
    )


@pytest.fixture
def primary(identity, settings):
    manager = new_instance_manager(identity, settings)
    assert manager.check_another_instance(exit_on_found=False) is False
    yield manager
    manager.stop()


def _record(manager: InstanceManager) -> list[tuple[str, str | None]]:
    records: list[tuple[str, str | None]] = []
    manager.on_new_instance(lambda: records.append(("launch", None)))
    manager.on_new_instance_with_message(lambda text: records.append(("message", text)))
    return records


def test_factory_returns_independent_managers(identity, settings) -> None:
    first = new_instance_manager(identity, settings)
    second = new_instance_manager(identity, settings)

    assert isinstance(first, InstanceManager)
    assert first is not second


def test_claim_is_created_lazily(identity, settings) -> None:
    manager = new_instance_manager(identity, settings)

    assert manager._claim is None
    assert manager.claim is manager.claim
    assert not manager.is_primary


def test_first_instance_is_primary(primary) -> None:
    assert primary.is_primary
    assert not primary.is_listening


def test_secondary_notifies_primary_without_exiting(primary, identity, settings) -> None:
    records = _record(primary)
    primary.wait_for_other_instances(run_in_background=True)

    secondary = new_instance_manager(identity, settings)
    assert secondary.check_another_instance(exit_on_found=False, message="open report.txt") is True

    assert _wait_for(lambda: len(records) == 2)
    assert records == [("launch", None), ("message", "open report.txt")]
    assert not secondary.is_primary


def test_secondary_exits_with_success_status(primary, identity, settings) -> None:
    records = _record(primary)
    primary.wait_for_other_instances(run_in_background=True)

    secondary = new_instance_manager(identity, settings)
    with pytest.raises(SystemExit) as exc_info:
        secondary.check_another_instance(exit_on_found=True)

    assert exc_info.value.code == 0
    assert _wait_for(lambda: records == [("launch", None)])


def test_secondary_exits_even_when_primary_does_not_answer(primary, identity, settings) -> None:
    secondary = new_instance_manager(identity, settings)

    start = time.monotonic()
    with pytest.raises(SystemExit) as exc_info:
        secondary.check_another_instance(exit_on_found=True, message="lost")

    assert exc_info.value.code == 0
    assert time.monotonic() - start < 1.0


def test_secondary_returns_true_when_primary_does_not_answer(primary, identity, settings) -> None:
    secondary = new_instance_manager(identity, settings)

    assert secondary.check_another_instance(exit_on_found=False) is True


def test_vanished_primary_is_replaced_on_reclaim(identity, settings, monkeypatch) -> None:
    manager = new_instance_manager(identity, settings)
    results = iter([False, True])
    monkeypatch.setattr(manager.claim, "try_acquire", lambda: next(results))

    assert manager.check_another_instance(exit_on_found=True) is False


def test_reclaim_can_be_disabled(identity, tmp_path, monkeypatch) -> None:
    settings = Settings(INSTANCE_RUNTIME_DIR=str(tmp_path), RECLAIM_ON_NOTIFY_FAILURE=False)
    manager = new_instance_manager(identity, settings)
    calls: list[int] = []

    def refuse() -> bool:
        calls.append(1)
        return False

    monkeypatch.setattr(manager.claim, "try_acquire", refuse)

    with pytest.raises(SystemExit):
        manager.check_another_instance(exit_on_found=True)
    assert len(calls) == 1


def test_only_primary_may_listen(identity, settings) -> None:
    manager = new_instance_manager(identity, settings)

    with pytest.raises(RuntimeError):
        manager.wait_for_other_instances(run_in_background=True)


def test_listener_runs_once_per_manager(primary) -> None:
    primary.wait_for_other_instances(run_in_background=True)

    with pytest.raises(RuntimeError):
        primary.wait_for_other_instances(run_in_background=True)


def test_stop_ends_background_listener(primary, identity, settings) -> None:
    thread = primary.wait_for_other_instances(run_in_background=True)
    assert thread is not None and thread.daemon
    assert primary.is_listening

    primary.stop()

    assert not thread.is_alive()
    assert not primary.is_listening
    assert new_instance_manager(identity, settings).check_another_instance(exit_on_found=False) is True


def test_secondary_process_notifies_and_exits(primary, identity, tmp_path) -> None:
    records = _record(primary)
    primary.wait_for_other_instances(run_in_background=True)

    env = os.environ.copy()
    env["PYTHONPATH"] = str(PROJECT_ROOT)
    env["INSTANCE_RUNTIME_DIR"] = str(tmp_path)
    code = textwrap.dedent(
        f"""
        from instance_manager import new_instance_manager
        manager = new_instance_manager({identity!r})
        manager.check_another_instance(exit_on_found=True, message='from child')
        print('still running')
        """
    )
    result = subprocess.run(
        [sys.executable, "-c", code],
        capture_output=True,
        text=True,
        env=env,
        timeout=15,
    )

    assert result.returncode == 0, result.stderr
    assert "still running" not in result.stdout
    assert _wait_for(lambda: records == [("launch", None), ("message", "from child")])


@pytest.mark.parametrize("identity", ["Contoso/Editor", "a" * 300])
def test_unusual_identity_coordinates_primary_and_secondary(settings, identity) -> None:
    primary = new_instance_manager(identity, settings)
    assert primary.check_another_instance(exit_on_found=False) is False
    records = _record(primary)
    primary.wait_for_other_instances(run_in_background=True)
    try:
        secondary = new_instance_manager(identity, settings)
        assert secondary.check_another_instance(exit_on_found=False, message="open") is True
        assert _wait_for(lambda: records == [("launch", None), ("message", "open")])
    finally:
        primary.stop()
