from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from typer.testing import CliRunner

from preview_deploy import __version__
from preview_deploy.cli import app, write_outputs
from preview_deploy.domain import RunMode, RunOutcome
from preview_deploy.models import PreviewResult

runner = CliRunner()


class CliBasicsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn(__version__, result.output)

    def test_write_outputs_appends_to_file(self) -> None:
        output_file = self.root / "github_output"
        output_file.write_text("existing=1\n")
        result = PreviewResult(
            mode=RunMode.DEPLOY,
            outcome=RunOutcome.SUCCESS,
            preview_id=3,
            preview_url="https://octo.github.io/site/pr/3/",
            has_changes=True,
        )

        write_outputs(result, str(output_file))

        lines = output_file.read_text().splitlines()
        self.assertEqual(lines[0], "existing=1")
        self.assertIn("preview-url=https://octo.github.io/site/pr/3/", lines)
        self.assertIn("has-changes=true", lines)
        self.assertIn("outcome=success", lines)


@unittest.skipUnless(shutil.which("git"), "git executable not available")
class CliEndToEndTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        remote = self.root / "remote.git"
        subprocess.run(["git", "init", "--bare", "--quiet", str(remote)], check=True)
        self.remote = remote
        self.output_file = self.root / "outputs"
        self.env = {
            "PATH": os.environ.get("PATH", ""),
            "HOME": str(self.root),
            "PREVIEW_REMOTE_URL": remote.as_uri(),
            "PREVIEW_WORKDIR": str(self.root / "work"),
            "PREVIEW_BASE_URL": "https://previews.example.com",
            "PREVIEW_COMMENT": "false",
            "GITHUB_OUTPUT": str(self.output_file),
        }

    def _invoke(self, args: list[str]):
        with mock.patch.dict(os.environ, self.env, clear=True):
            return runner.invoke(app, args)

    def test_deploy_then_cleanup(self) -> None:
        site = self.root / "site"
        site.mkdir()
        (site / "index.html").write_text("<h1>hi</h1>")

        deployed = self._invoke(["deploy", str(site), "--preview-id", "12"])
        self.assertEqual(deployed.exit_code, 0, deployed.output)
        self.assertIn("preview-url=https://previews.example.com/pr/12/", deployed.output)
        self.assertIn("has-changes=true", deployed.output)

        listing = subprocess.run(
            ["git", "--git-dir", str(self.remote), "ls-tree", "-r", "--name-only", "gh-pages"],
            check=True,
            capture_output=True,
            text=True,
        )
        self.assertEqual(listing.stdout.split(), ["pr/12/index.html"])

        removed = self._invoke(["cleanup", "--preview-id", "12"])
        self.assertEqual(removed.exit_code, 0, removed.output)
        again = self._invoke(["cleanup", "--preview-id", "12"])
        self.assertEqual(again.exit_code, 0, again.output)
        self.assertIn("has-changes=false", again.output)
        self.assertIn("outcome=success_noop", self.output_file.read_text())

    def test_missing_preview_id_fails(self) -> None:
        result = self._invoke(["cleanup"])
        self.assertEqual(result.exit_code, 1)


if __name__ == "__main__":
    unittest.main()
