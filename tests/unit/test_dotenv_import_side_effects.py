import os
import subprocess
import sys
import textwrap
from pathlib import Path

from riskgate.config.dotenv_loader import load_dotenv_files


def test_config_import_has_no_dotenv_side_effects():
    """
    Importing riskgate.config.config must not load dotenv files.

    A patched `dotenv.load_dotenv` aborts the subprocess if anything calls it
    at import time.
    """
    repo_root = Path(__file__).resolve().parent.parent.parent

    code = textwrap.dedent(
        """
        import dotenv

        def load_dotenv(*args, **kwargs):
            raise SystemExit("DOTENV_CALLED")

        dotenv.load_dotenv = load_dotenv

        import riskgate.config.config
        print("OK")
        """
    ).strip()

    env = dict(os.environ)
    env["PYTHONPATH"] = str(repo_root)

    res = subprocess.run(
        [sys.executable, "-c", code],
        cwd=str(repo_root),
        env=env,
        capture_output=True,
        text=True,
    )

    assert res.returncode == 0, f"stdout={res.stdout}\nstderr={res.stderr}"
    assert "OK" in (res.stdout or "")


def test_prod_skips_dotenv(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("RISKGATE_DOTENV_PROBE=loaded\n")
    monkeypatch.setenv("ENVIRONMENT", "prod")
    monkeypatch.delenv("RISKGATE_DOTENV_PROBE", raising=False)

    load_dotenv_files(repo_root=tmp_path)

    assert "RISKGATE_DOTENV_PROBE" not in os.environ


def test_dev_loads_env_then_local_override(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("RISKGATE_DOTENV_PROBE=base\n")
    (tmp_path / ".env.local").write_text("RISKGATE_DOTENV_PROBE=local\n")
    monkeypatch.setenv("ENVIRONMENT", "dev")
    # setenv first so teardown removes whatever load_dotenv writes
    monkeypatch.setenv("RISKGATE_DOTENV_PROBE", "")
    monkeypatch.delenv("RISKGATE_DOTENV_PROBE")

    load_dotenv_files(repo_root=tmp_path)

    assert os.environ["RISKGATE_DOTENV_PROBE"] == "local"
