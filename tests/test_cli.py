import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillhub.cli import build_parser, main
from skillhub.models import InstallMode

MANIFEST = {"id": "hello-world", "name": "Hello World", "version": "1.0.0", "summary": "Says hello"}


class TestParser(unittest.TestCase):
    def test_mode_parsing_and_aliases(self) -> None:
        args = build_parser().parse_args(["install", "hello-world", "codex", "--mode", "config-patch"])
        self.assertEqual(args.cmd, "install")
        self.assertIs(args.mode, InstallMode.CONFIG_PATCH)

        args = build_parser().parse_args(["apply", "hello-world", "codex"])
        self.assertIs(args.mode, InstallMode.AUTO)

    def test_bad_mode_is_a_usage_error(self) -> None:
        with patch("sys.stderr", new=io.StringIO()) as err:
            with self.assertRaises(SystemExit) as ctx:
                build_parser().parse_args(["deploy", "hello-world", "codex", "--mode", "hardlink"])
        self.assertEqual(ctx.exception.code, 2)
        self.assertIn("hardlink", err.getvalue())


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.state = self.root / "state"
        self.demo_dir = self.root / "demo-skills"
        self.demo_dir.mkdir()

        self.config = self.root / "config.json"
        self.config.write_text(
            json.dumps(
                {
                    "custom_products": [
                        {"id": "demo", "skills_dir": str(self.demo_dir), "install_modes": ["copy"]},
                    ]
                }
            ),
            encoding="utf-8",
        )

        self.source = self.root / "hello-world"
        self.source.mkdir()
        (self.source / "skill.json").write_text(json.dumps(MANIFEST), encoding="utf-8")

    def tearDown(self) -> None:
        self._td.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        with (
            patch("sys.stdout", new=io.StringIO()) as out,
            patch("sys.stderr", new=io.StringIO()) as err,
        ):
            rc = main(["--state", str(self.state), "--config", str(self.config), *argv])
        return rc, out.getvalue(), err.getvalue()

    def test_apply_then_status_json(self) -> None:
        rc, out, _ = self.run_cli("apply", str(self.source), "demo")
        self.assertEqual(rc, 0)
        self.assertIn("[4/4]", out)
        self.assertIn("chosenMode=copy", out)
        self.assertTrue((self.demo_dir / "hello-world" / "skill.json").is_file())

        rc, out, _ = self.run_cli("status", "hello-world", "--json")
        self.assertEqual(rc, 0)
        [item] = json.loads(out)
        self.assertTrue(item["staged"])
        self.assertEqual(item["deployedProducts"], ["demo"])
        self.assertEqual(item["products"]["demo"]["mode"], "copy")
        self.assertTrue(item["products"]["demo"]["present"])

        rc, out, _ = self.run_cli("skills")
        self.assertEqual(rc, 0)
        self.assertIn("hello-world", out)
        self.assertIn("demo", out)

    def test_errors_are_printed_and_exit_one(self) -> None:
        rc, out, err = self.run_cli("status", "nope")
        self.assertEqual(rc, 1)
        self.assertEqual(out, "")
        self.assertEqual(err.strip(), "error: Skill not found: nope")

        rc, _, err = self.run_cli("deploy", "nope", "demo")
        self.assertEqual(rc, 1)
        self.assertIn("Skill not found", err)

    def test_enable_before_deploy_points_at_deploy(self) -> None:
        self.run_cli("stage", str(self.source))
        rc, _, err = self.run_cli("enable", "hello-world", "demo")
        self.assertEqual(rc, 1)
        self.assertIn("skillhub deploy hello-world demo", err)

    def test_products_lists_builtins_and_custom(self) -> None:
        rc, out, _ = self.run_cli("products")
        self.assertEqual(rc, 0)
        for product_id in ("claude-code", "codex", "cursor", "openclaw", "opencode", "demo"):
            self.assertIn(product_id, out)

    def test_config_path_override_is_stored_in_state(self) -> None:
        rc, _, _ = self.run_cli("config-path", "cursor", str(self.root / "cursor.json"))
        self.assertEqual(rc, 0)
        state = json.loads((self.state / "state.json").read_text(encoding="utf-8"))
        self.assertEqual(state["productConfigPathOverrides"], {"cursor": str(self.root / "cursor.json")})

        self.run_cli("config-path", "cursor", "--clear")
        state = json.loads((self.state / "state.json").read_text(encoding="utf-8"))
        self.assertEqual(state["productConfigPathOverrides"], {})

        rc, _, err = self.run_cli("config-path", "nope", "/tmp/x.json")
        self.assertEqual(rc, 1)
        self.assertIn("nope", err)

    def test_config_show(self) -> None:
        rc, out, _ = self.run_cli("config", "show")
        self.assertEqual(rc, 0)
        data = json.loads(out)
        self.assertEqual(data["resolved_state_dir"], str(self.state))
        self.assertEqual(data["custom_products"][0]["id"], "demo")

        rc, out, _ = self.run_cli("config", "path")
        self.assertEqual(out.strip(), str(self.config))

    def test_config_set_updates_file(self) -> None:
        rc, out, _ = self.run_cli("config", "set", "git_hosts", '["git.example.com"]')
        self.assertEqual(rc, 0)
        self.assertIn("Set git_hosts", out)
        data = json.loads(self.config.read_text(encoding="utf-8"))
        self.assertEqual(data["git_hosts"], ["git.example.com"])
        self.assertEqual(data["custom_products"][0]["id"], "demo")

        rc, _, err = self.run_cli("config", "set", "timeout_s", "never")
        self.assertEqual(rc, 1)
        self.assertTrue(err.startswith("error: "))

    def test_malformed_config_is_reported_not_raised(self) -> None:
        for raw in ({"custom_products": None}, {"skills_dir_overrides": ["codex"]}):
            self.config.write_text(json.dumps(raw), encoding="utf-8")
            rc, out, err = self.run_cli("products")
            self.assertEqual(rc, 1)
            self.assertEqual(out, "")
            self.assertIn("error: Invalid config value", err)

    def test_gc_and_reconcile_on_empty_state(self) -> None:
        rc, out, _ = self.run_cli("gc")
        self.assertEqual(rc, 0)
        self.assertIn("Removed 0 leftover(s).", out)
        rc, out, _ = self.run_cli("reconcile")
        self.assertEqual(out.strip(), "No drift found.")


if __name__ == "__main__":
    unittest.main()
