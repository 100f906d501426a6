# test_venv_state.py
from __future__ import annotations

import os
import threading
from pathlib import Path

from pipkit.environ.venv_state import INACTIVE, UNSET_ON_ACTIVATE, VenvStateManager, activation_overlay


def _activate(state: VenvStateManager, root: Path, **kwargs):
    return state.activate(root, root / "bin" / "python", root / "bin" / "pip", root / "bin", **kwargs)


def test_starts_inactive():
    state = VenvStateManager()
    assert state.snapshot() is INACTIVE
    assert not state.active
    assert state.root is None
    assert not state.snapshot()


def test_activation_overlay():
    env = activation_overlay(Path("/envs/a"), Path("/envs/a/bin"), base_path="/usr/bin")
    assert env == {"VIRTUAL_ENV": str(Path("/envs/a")), "PATH": f"{Path('/envs/a/bin')}{os.pathsep}/usr/bin"}


def test_activation_overlay_empty_path():
    env = activation_overlay(Path("/envs/a"), Path("/envs/a/bin"), base_path="")
    assert env["PATH"] == str(Path("/envs/a/bin"))


def test_activate_records_paths_and_overlay(tmp_path):
    state = VenvStateManager()
    snap = _activate(state, tmp_path, previous=(Path("/usr/bin/python3"), None), base_path="/usr/bin")

    assert snap.active
    assert snap.root == tmp_path
    assert snap.python_path == tmp_path / "bin" / "python"
    assert snap.env["VIRTUAL_ENV"] == str(tmp_path)
    assert snap.env_unset == UNSET_ON_ACTIVATE
    assert snap.previous == (Path("/usr/bin/python3"), None)
    assert state.snapshot() is snap


def test_reactivation_replaces_and_keeps_previous(tmp_path):
    state = VenvStateManager()
    _activate(state, tmp_path / "a", previous=(Path("/usr/bin/python3"), Path("/usr/bin/pip3")))
    snap = _activate(state, tmp_path / "b", previous=(Path("/opt/ignored"), None))

    assert snap.root == tmp_path / "b"
    assert snap.previous == (Path("/usr/bin/python3"), Path("/usr/bin/pip3"))


def test_deactivate_keeps_previous(tmp_path):
    state = VenvStateManager()
    recorded = (Path("/usr/bin/python3"), Path("/usr/bin/pip3"))
    _activate(state, tmp_path, previous=recorded)

    restored = state.deactivate()

    assert not restored.active
    assert restored.previous == recorded
    assert state.snapshot() is restored
    assert restored.base() is restored


def test_snapshot_is_immutable_across_changes(tmp_path):
    state = VenvStateManager()
    before = _activate(state, tmp_path)
    state.deactivate()

    assert before.active
    assert before.root == tmp_path
    assert not state.active


def test_deactivate_is_idempotent(tmp_path):
    state = VenvStateManager()
    assert state.deactivate() is INACTIVE

    _activate(state, tmp_path)
    assert state.deactivate() is INACTIVE
    assert state.deactivate() is INACTIVE


def test_is_active_root(tmp_path):
    state = VenvStateManager()
    assert not state.is_active_root(tmp_path)

    _activate(state, tmp_path)
    assert state.is_active_root(tmp_path)
    assert state.is_active_root(tmp_path / "sub" / "..")
    assert not state.is_active_root(tmp_path / "other")


def test_concurrent_activation_leaves_one_env(tmp_path):
    state = VenvStateManager()
    roots = [tmp_path / f"env{i}" for i in range(8)]
    barrier = threading.Barrier(len(roots))

    def worker(root):
        barrier.wait()
        _activate(state, root)

    threads = [threading.Thread(target=worker, args=(r,)) for r in roots]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snap = state.snapshot()
    assert snap.active
    assert snap.root in roots
    assert snap.env["VIRTUAL_ENV"] == str(snap.root)
