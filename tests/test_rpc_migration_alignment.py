"""Guard against drift between runtime database calls and the migrations."""

from __future__ import annotations

import re
from pathlib import Path

from deploy_autofix.signatures import FixKind
from deploy_autofix.store import Alert, AlertSeverity, DatabaseStore, FixAttempt

RPC_CALL_RE = re.compile(r'\.rpc\(\s*"([a-zA-Z_][a-zA-Z0-9_]*)"')
MIGRATION_FUNC_RE = re.compile(
    r"CREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION\s+([a-zA-Z_][a-zA-Z0-9_\.]*)\s*\(",
    re.IGNORECASE,
)
MIGRATION_TABLE_RE = re.compile(
    r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?([a-zA-Z_][a-zA-Z0-9_]*)\s*\((.*?)\n\);",
    re.IGNORECASE | re.DOTALL,
)

REPO_ROOT = Path(__file__).resolve().parents[1]
MIGRATIONS_DIR = REPO_ROOT / "supabase" / "migrations"


def _extract_called_rpcs(path: Path) -> set[str]:
    return set(RPC_CALL_RE.findall(path.read_text()))


def _migration_sql() -> str:
    return "\n".join(f.read_text() for f in sorted(MIGRATIONS_DIR.glob("*.sql")))


def _extract_migration_functions() -> set[str]:
    return {name.split(".")[-1] for name in MIGRATION_FUNC_RE.findall(_migration_sql())}


def _extract_migration_tables() -> dict[str, set[str]]:
    tables: dict[str, set[str]] = {}
    for name, body in MIGRATION_TABLE_RE.findall(_migration_sql()):
        columns = set()
        for line in body.splitlines():
            line = line.strip()
            if line and not line.upper().startswith(("CHECK", "PRIMARY", "UNIQUE", "--")):
                columns.add(line.split()[0])
        tables[name] = columns
    return tables


def test_runtime_rpc_calls_match_migrations() -> None:
    called_rpcs: set[str] = set()
    for file_path in sorted((REPO_ROOT / "deploy_autofix").glob("*.py")):
        called_rpcs.update(_extract_called_rpcs(file_path))

    assert called_rpcs, "expected the lease service to call at least one RPC"
    missing = called_rpcs - _extract_migration_functions()
    assert not missing, (
        "Runtime RPC function(s) are not defined in migrations: "
        f"{sorted(missing)}"
    )


def test_store_rows_match_migration_tables() -> None:
    tables = _extract_migration_tables()
    attempt = FixAttempt(fix_ids=(FixKind.RAILWAY_CONFIG,), repository="acme/shop", branch_name="autofix/1")
    alert = Alert(type="FIX_APPLIED", severity=AlertSeverity.SUCCESS, message="ok")

    for table, row in (
        (DatabaseStore.FIX_TABLE, attempt.to_dict()),
        (DatabaseStore.ALERT_TABLE, alert.to_dict()),
    ):
        assert table in tables, f"table {table} is not created by any migration"
        missing = set(row) - tables[table]
        assert not missing, f"{table} is missing column(s): {sorted(missing)}"


def test_lease_table_exists() -> None:
    assert {"resource", "held_by", "expires_at"} <= _extract_migration_tables()["repository_leases"]
