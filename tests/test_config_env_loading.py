from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class ConfigEnvLoadingTests(unittest.TestCase):
    @staticmethod
    def _run(code: str, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", code],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        result = self._run("import config; print('ok')", "configs/__definitely_missing_env_for_test__.env")
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("UNITTEST_BOT_ENV_FLAG=loaded\n", encoding="utf-8")
            result = self._run("import os, config; print(os.getenv('UNITTEST_BOT_ENV_FLAG', ''))", str(env_path))
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def test_engine_keys_are_loaded_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            # BOM-prefixed files must still parse the first key.
            env_path.write_text(
                "\ufeffHONEYPOT_MAX_IMPACT=2.5\nMIN_OPERATING_BALANCE_SOL=0.05\nWRAP_AND_UNWRAP_SOL=false\n",
                encoding="utf-8",
            )
            result = self._run(
                "import config; "
                "print(f'{config.HONEYPOT_MAX_IMPACT}|{config.MIN_OPERATING_BALANCE_SOL}|{config.WRAP_AND_UNWRAP_SOL}')",
                str(env_path),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "2.5|0.05|False")


if __name__ == "__main__":
    unittest.main()
