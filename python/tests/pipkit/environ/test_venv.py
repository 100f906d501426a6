# test_venv.py
from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest

from pipkit.environ.environment import PipManager
from pipkit.environ.pip_settings import PipSettings
from pipkit.environ.venv import is_venv_dir
from pipkit.errors import ErrorKind, PipError
from pipkit.pip.models import VenvCreateOptions


@pytest.fixture
def creating(make_venv, results):
    """Scripted answer that lays out a venv at the path the command names."""

    def _answer(request):
        make_venv(Path(request.args[-1]))
        return results.ok()

    return _answer


def _manager(executor, fake_bin: Path) -> PipManager:
    return PipManager(PipSettings(), executor=executor, search_path=str(fake_bin))


# ─────────────────────────────────────────────────────────────────────────────
# Detection / validation
# ─────────────────────────────────────────────────────────────────────────────

def test_is_venv_dir(tmp_path, make_venv):
    assert is_venv_dir(make_venv(tmp_path / "full"))
    assert is_venv_dir(make_venv(tmp_path / "cfg-only", python=False, pip=False))
    assert is_venv_dir(make_venv(tmp_path / "no-cfg", cfg=False))

    plain = tmp_path / "plain"
    plain.mkdir()
    assert not is_venv_dir(plain)
    assert not is_venv_dir(tmp_path / "missing")


def test_validate_returns_interpreter(tmp_path, fake_bin, make_venv, scripted, results):
    venv = make_venv(tmp_path / "venv")
    pm = _manager(scripted(results.ok()), fake_bin)
    assert pm.venv.validate(venv) == venv / "bin" / "python"


def test_validate_corrupted(tmp_path, fake_bin, make_venv, scripted, results):
    venv = make_venv(tmp_path / "venv", python=False)
    pm = _manager(scripted(results.ok()), fake_bin)
    with pytest.raises(PipError) as exc_info:
        pm.venv.validate(venv)
    assert exc_info.value.kind is ErrorKind.VENV_CORRUPTED


def test_validate_plain_directory(tmp_path, fake_bin, scripted, results):
    pm = _manager(scripted(results.ok()), fake_bin)
    with pytest.raises(PipError) as exc_info:
        pm.venv.validate(tmp_path)
    assert exc_info.value.kind is ErrorKind.VENV_NOT_FOUND


# ─────────────────────────────────────────────────────────────────────────────
# create
# ─────────────────────────────────────────────────────────────────────────────

class TestCreate:
    def test_create_runs_venv_module(self, tmp_path, fake_bin, scripted, creating):
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)
        target = tmp_path / "envs" / "venv"

        info = pm.create_venv(target, VenvCreateOptions(prompt="demo", upgrade_deps=True))

        assert executor.last.args == (
            str(fake_bin / "python3"), "-m", "venv", "--prompt", "demo", "--upgrade-deps", str(target),
        )
        assert executor.last.operation == "venv-create"
        assert executor.last.retries == 0
        assert info.path == target
        assert info.python_path == target / "bin" / "python"
        assert not info.is_active
        assert pm.active_venv is None

    def test_create_flags(self, tmp_path, fake_bin, scripted, creating):
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)

        opts = VenvCreateOptions(system_site_packages=True, without_pip=True, upgrade_deps=True)
        pm.create_venv(tmp_path / "venv", opts)

        args = executor.last.args
        assert "--system-site-packages" in args
        assert "--without-pip" in args
        # upgrading deps needs pip
        assert "--upgrade-deps" not in args

    def test_create_does_not_inherit_activation(self, tmp_path, fake_bin, make_venv, scripted, creating):
        active = make_venv(tmp_path / "active")
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)
        pm.activate_venv(active)

        pm.create_venv(tmp_path / "other")

        assert "VIRTUAL_ENV" not in executor.last.env
        assert executor.last.env_unset == ()
        assert pm.active_venv == active
        # the pre-activation interpreter runs -m venv, not the active one
        assert executor.last.args[0] == str(fake_bin / "python3")

    def test_existing_venv_without_force(self, tmp_path, fake_bin, make_venv, scripted, creating):
        venv = make_venv(tmp_path / "venv")
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)

        with pytest.raises(PipError) as exc_info:
            pm.create_venv(venv)

        assert exc_info.value.kind is ErrorKind.VENV_ALREADY_EXISTS
        assert executor.requests == []

    def test_existing_venv_with_force(self, tmp_path, fake_bin, make_venv, scripted, creating):
        venv = make_venv(tmp_path / "venv")
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)

        pm.create_venv(venv, VenvCreateOptions(force=True))

        assert "--clear" in executor.last.args

    def test_non_empty_directory_is_rejected(self, tmp_path, fake_bin, scripted, creating):
        target = tmp_path / "project"
        target.mkdir()
        (target / "main.py").write_text("print('hi')\n")
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)

        with pytest.raises(PipError) as exc_info:
            pm.create_venv(target, VenvCreateOptions(force=True))

        assert exc_info.value.kind is ErrorKind.INVALID_ARGUMENT
        assert executor.requests == []

    def test_target_is_a_file(self, tmp_path, fake_bin, scripted, creating):
        target = tmp_path / "file"
        target.write_text("")
        pm = _manager(scripted(creating), fake_bin)
        with pytest.raises(PipError) as exc_info:
            pm.create_venv(target)
        assert exc_info.value.kind is ErrorKind.INVALID_ARGUMENT

    def test_falls_back_to_virtualenv(self, tmp_path, fake_bin, scripted, results, creating):
        executor = scripted(
            results.failed("/usr/bin/python3: No module named venv\n"),
            creating,
        )
        pm = _manager(executor, fake_bin)
        target = tmp_path / "venv"

        info = pm.create_venv(target)

        assert [r.args[1:3] for r in executor.requests] == [("-m", "venv"), ("-m", "virtualenv")]
        assert info.path == target

    def test_ensurepip_missing_also_falls_back(self, tmp_path, fake_bin, scripted, results, creating):
        executor = scripted(
            results.failed(
                "The virtual environment was not created successfully because ensurepip is not\n"
                "available.  On Debian/Ubuntu systems, you need to install the python3-venv\n"
                "package using the following command.\n"
            ),
            creating,
        )
        pm = _manager(executor, fake_bin)

        pm.create_venv(tmp_path / "venv")

        assert executor.last.args[1:3] == ("-m", "virtualenv")

    def test_other_failures_do_not_fall_back(self, tmp_path, fake_bin, scripted, results):
        executor = scripted(results.failed("Error: [Errno 13] Permission denied: '/opt/venv'\n"))
        pm = _manager(executor, fake_bin)

        with pytest.raises(PipError) as exc_info:
            pm.create_venv(tmp_path / "venv")

        assert exc_info.value.kind is ErrorKind.PERMISSION_DENIED
        assert len(executor.requests) == 1

    def test_no_tool_available(self, tmp_path, fake_bin, scripted, results, monkeypatch):
        monkeypatch.setenv("PATH", str(fake_bin))
        executor = scripted(
            results.failed("/usr/bin/python3: No module named venv\n"),
            results.failed("/usr/bin/python3: No module named virtualenv\n"),
        )
        pm = _manager(executor, fake_bin)

        with pytest.raises(PipError) as exc_info:
            pm.create_venv(tmp_path / "venv")

        assert "virtualenv is not available" in exc_info.value.message
        assert len(executor.requests) == 2

    def test_with_python_selector(self, tmp_path, fake_bin, scripted, creating):
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)
        base = fake_bin / "python3"

        pm.create_venv(tmp_path / "venv", VenvCreateOptions(python=str(base)))

        assert executor.last.args[0] == str(base)

    def test_unknown_python_selector(self, tmp_path, fake_bin, scripted, creating):
        executor = scripted(creating)
        pm = _manager(executor, fake_bin)
        with pytest.raises(PipError) as exc_info:
            pm.create_venv(tmp_path / "venv", VenvCreateOptions(python="2.1"))
        assert exc_info.value.kind is ErrorKind.INTERPRETER_NOT_FOUND
        assert executor.requests == []


# ─────────────────────────────────────────────────────────────────────────────
# remove
# ─────────────────────────────────────────────────────────────────────────────

class TestRemove:
    def test_remove(self, tmp_path, fake_bin, make_venv, scripted, results):
        venv = make_venv(tmp_path / "venv")
        pm = _manager(scripted(results.ok()), fake_bin)

        pm.remove_venv(venv)

        assert not venv.exists()

    def test_remove_active_deactivates_first(self, tmp_path, fake_bin, make_venv, scripted, results):
        venv = make_venv(tmp_path / "venv")
        pm = _manager(scripted(results.ok()), fake_bin)
        pm.activate_venv(venv)

        pm.remove_venv(venv)

        assert pm.active_venv is None
        assert not venv.exists()

    def test_remove_other_keeps_activation(self, tmp_path, fake_bin, make_venv, scripted, results):
        active = make_venv(tmp_path / "active")
        other = make_venv(tmp_path / "other")
        pm = _manager(scripted(results.ok()), fake_bin)
        pm.activate_venv(active)

        pm.remove_venv(other)

        assert pm.active_venv == active

    def test_remove_corrupted(self, tmp_path, fake_bin, make_venv, scripted, results):
        venv = make_venv(tmp_path / "venv", python=False, pip=False)
        pm = _manager(scripted(results.ok()), fake_bin)

        pm.remove_venv(venv)

        assert not venv.exists()

    def test_remove_refuses_plain_directory(self, tmp_path, fake_bin, scripted, results):
        target = tmp_path / "data"
        target.mkdir()
        (target / "keep.txt").write_text("x")
        pm = _manager(scripted(results.ok()), fake_bin)

        with pytest.raises(PipError) as exc_info:
            pm.remove_venv(target)

        assert exc_info.value.kind is ErrorKind.VENV_NOT_FOUND
        assert (target / "keep.txt").exists()

    @pytest.mark.skipif(sys.prefix == sys.base_prefix, reason="tests are not running inside a venv")
    def test_remove_refuses_running_interpreter(self, fake_bin, scripted, results):
        pm = _manager(scripted(results.ok()), fake_bin)
        with pytest.raises(PipError) as exc_info:
            pm.remove_venv(sys.prefix)
        assert exc_info.value.kind is ErrorKind.INVALID_ARGUMENT
        assert Path(sys.prefix).exists()


# ─────────────────────────────────────────────────────────────────────────────
# info / list
# ─────────────────────────────────────────────────────────────────────────────

class TestInspect:
    def test_info_from_pyvenv_cfg(self, tmp_path, fake_bin, make_venv, scripted, results):
        venv = make_venv(tmp_path / "venv", extra_cfg="prompt = 'demo'\n")
        executor = scripted(results.ok())
        pm = _manager(executor, fake_bin)
        pm.activate_venv(venv)

        info = pm.venv_info(venv)

        assert info.python_version == "3.12.1"
        assert info.home == "/usr/bin"
        assert info.prompt == "demo"
        assert info.include_system_site_packages is False
        assert info.pip_path == venv / "bin" / "pip"
        assert info.is_active
        assert isinstance(info.created_at, dt.datetime)
        # version came from pyvenv.cfg
        assert executor.requests == []

    def test_info_probes_missing_version(self, tmp_path, fake_bin, make_venv, scripted, results):
        venv = make_venv(tmp_path / "venv", version=None)
        executor = scripted(results.ok("Python 3.11.4\n"))
        pm = _manager(executor, fake_bin)

        info = pm.venv_info(venv)

        assert info.python_version == "3.11.4"
        assert executor.last.args == (str(venv / "bin" / "python"), "--version")

    def test_list(self, tmp_path, fake_bin, make_venv, scripted, results):
        base = tmp_path / "envs"
        make_venv(base / "b", version=None)
        make_venv(base / "a")
        make_venv(base / "broken", python=False, pip=False)
        (base / "notes").mkdir()
        (base / "README").write_text("x")

        executor = scripted(results.ok("Python 3.11.4\n"))
        pm = _manager(executor, fake_bin)

        infos = pm.list_venvs(base)

        assert [i.path.name for i in infos] == ["a", "b"]
        assert [i.python_version for i in infos] == ["3.12.1", "3.11.4"]
        assert len(executor.requests) == 1

    def test_list_missing_directory(self, tmp_path, fake_bin, scripted, results):
        pm = _manager(scripted(results.ok()), fake_bin)
        with pytest.raises(PipError) as exc_info:
            pm.list_venvs(tmp_path / "missing")
        assert exc_info.value.kind is ErrorKind.VENV_NOT_FOUND
