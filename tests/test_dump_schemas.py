import contextlib
import io
import tempfile
import unittest
from pathlib import Path

import yaml

from dump_schemas import dump, main
from migration_parser import build_schemas, parse_migrations_dir
from schema_model import Raw, load_schema_dir, parse_snapshot


MIGRATIONS_DIR = Path(__file__).resolve().parent / "fixtures" / "migrations"


def run_quietly(fn, *args, **kwargs) -> tuple[int, str, str]:
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = fn(*args, **kwargs)
    return code, out.getvalue(), err.getvalue()


class TestDumpSchemas(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.out_dir = Path(self._tmp.name) / "schemas"

    def test_writes_one_snapshot_per_table(self) -> None:
        code, out, _ = run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {})
        self.assertEqual(code, 0)
        self.assertEqual(sorted(p.name for p in self.out_dir.iterdir()), ["posts.yaml", "sessions.yaml", "users.yaml"])
        self.assertIn("active_users", out)
        self.assertIn("Total: 3 schemas written", out)

    def test_snapshot_content(self) -> None:
        run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {})
        users = yaml.safe_load((self.out_dir / "users.yaml").read_text(encoding="utf-8"))
        self.assertEqual(users["table"], "users")
        self.assertEqual(list(users["columns"]), ["id", "name", "email", "status", "balance", "created_at", "nickname"])
        self.assertEqual(users["columns"]["id"], {"type": "increments", "primary": True})
        self.assertEqual(
            users["columns"]["status"],
            {"type": "enum", "default_to": "pending", "values": ["pending", "active"]},
        )
        self.assertEqual(users["columns"]["balance"], {"type": "decimal", "default_to": 0, "precision": 10, "scale": 2})

        sessions = yaml.safe_load((self.out_dir / "sessions.yaml").read_text(encoding="utf-8"))
        self.assertEqual(sessions["columns"]["id"]["default_to"], {"raw": "knex.raw('gen_random_uuid()')"})

    def test_snapshots_load_back_to_the_same_schemas(self) -> None:
        run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {})
        migrations, _ = parse_migrations_dir(MIGRATIONS_DIR)
        loaded = load_schema_dir(self.out_dir)
        self.assertEqual(loaded, build_schemas(migrations))
        self.assertIsInstance(loaded["sessions"]["id"].default_to, Raw)

    def test_check_mode(self) -> None:
        code, _, err = run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {}, check=True)
        self.assertEqual(code, 1)
        self.assertIn("[check] missing file", err)

        run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {})
        self.assertEqual(run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {}, check=True)[0], 0)

        path = self.out_dir / "posts.yaml"
        path.write_text(path.read_text(encoding="utf-8").replace("jsonb", "json"), encoding="utf-8")
        code, _, err = run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {}, check=True)
        self.assertEqual(code, 1)
        self.assertIn("[check] drift detected", err)

    def test_check_reports_stale_snapshot(self) -> None:
        run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {})
        (self.out_dir / "audit_log.yaml").write_text("table: audit_log\ncolumns: {}\n", encoding="utf-8")
        code, _, err = run_quietly(dump, MIGRATIONS_DIR, self.out_dir, {}, check=True)
        self.assertEqual(code, 1)
        self.assertIn("audit_log.yaml", err)

    def test_main_uses_config_dirs(self) -> None:
        config = Path(self._tmp.name) / "knexmigrate.yaml"
        config.write_text(
            yaml.safe_dump({"migrations_dir": str(MIGRATIONS_DIR), "schemas_dir": str(self.out_dir)}),
            encoding="utf-8",
        )
        code, _, _ = run_quietly(main, ["--config", str(config)])
        self.assertEqual(code, 0)
        self.assertTrue((self.out_dir / "users.yaml").exists())

    def test_main_missing_migrations_dir(self) -> None:
        code, _, err = run_quietly(
            main,
            [
                "--config",
                str(Path(self._tmp.name) / "missing.yaml"),
                "--migrations-dir",
                str(Path(self._tmp.name) / "nope"),
                "--out-dir",
                str(self.out_dir),
            ],
        )
        self.assertEqual(code, 1)
        self.assertIn("Error: Migrations directory not found", err)


class TestSnapshotValidation(unittest.TestCase):
    def test_rejects_unknown_type(self) -> None:
        with self.assertRaisesRegex(ValueError, "unknown column type"):
            parse_snapshot("table: t\ncolumns:\n  x:\n    type: geometry\n", "t.yaml")

    def test_rejects_unknown_keys(self) -> None:
        with self.assertRaisesRegex(ValueError, "unknown keys"):
            parse_snapshot("table: t\ncolumns:\n  x:\n    type: text\n    length: 3\n", "t.yaml")

    def test_rejects_misplaced_parameters(self) -> None:
        with self.assertRaisesRegex(ValueError, "max_length"):
            parse_snapshot("table: t\ncolumns:\n  x:\n    type: integer\n    max_length: 3\n", "t.yaml")
        with self.assertRaisesRegex(ValueError, "values"):
            parse_snapshot("table: t\ncolumns:\n  x:\n    type: text\n    values: [a]\n", "t.yaml")

    def test_requires_table_key(self) -> None:
        with self.assertRaises(ValueError):
            parse_snapshot("columns: {}\n", "t.yaml")

    def test_enum_without_values_and_increments_primary(self) -> None:
        _, schema = parse_snapshot(
            "table: t\ncolumns:\n  id:\n    type: increments\n  s:\n    type: enum\n", "t.yaml"
        )
        self.assertTrue(schema["id"].primary)
        self.assertEqual(schema["s"].values, ())


if __name__ == "__main__":
    unittest.main()
