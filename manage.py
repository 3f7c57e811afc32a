#!/usr/bin/env python3
"""
Policy Service — operator tool

Single entry point for schema upgrades, seeding, workers and the
legacy → template migration.  Migration and expiry commands talk to the
running backend over HTTP, so they go through the same validation,
audit and phase checks as any other caller.

Usage: python manage.py <command> [options]
"""

import json
import logging
import os
import subprocess
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════
#  Logging Setup
# ═══════════════════════════════════════════════════════════

class ColorFormatter(logging.Formatter):
    """Console formatter with ANSI colors and level symbols."""

    COLORS = {
        "INFO": "\033[96m",
        "SUCCESS": "\033[92m",
        "WARNING": "\033[93m",
        "ERROR": "\033[91m",
        "CRITICAL": "\033[91m\033[1m",
        "DEBUG": "\033[94m",
        "HEADER": "\033[95m",
        "BOLD": "\033[1m",
        "RESET": "\033[0m",
    }

    SYMBOLS = {
        "INFO": "→",
        "SUCCESS": "✓",
        "WARNING": "⚠",
        "ERROR": "✗",
        "CRITICAL": "☠",
        "DEBUG": "•",
        "STEP": "▶",
    }

    MARKERS = ("SUCCESS", "WARNING", "ERROR", "STEP")

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.platform != "win32" and sys.stderr.isatty()

    def _colorize(self, text: str, color_name: str) -> str:
        if not self.use_colors:
            return text
        color = self.COLORS.get(color_name, "")
        return f"{color}{text}{self.COLORS['RESET']}" if color else text

    def format(self, record: logging.LogRecord) -> str:
        msg = str(record.msg)

        symbol, color = self.SYMBOLS.get(record.levelname, ""), record.levelname
        for marker in self.MARKERS:
            if f"[{marker}]" in msg:
                symbol = self.SYMBOLS[marker]
                color = "INFO" if marker == "STEP" else marker
                msg = msg.replace(f"[{marker}] ", "", 1)
                break

        if symbol and not msg.startswith(("===", " ")):
            msg = f"{symbol} {msg}"
        record.msg = self._colorize(msg, "HEADER" if msg.startswith("===") else color)
        return super().format(record)


_log_dir = "logs"
os.makedirs(_log_dir, exist_ok=True)
_log_file = os.path.join(_log_dir, f"manage-{datetime.now():%Y%m%d}.log")

_file_handler = logging.FileHandler(_log_file, encoding="utf-8")
_file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))

_console_handler = logging.StreamHandler()
_console_handler.setFormatter(ColorFormatter())

logging.basicConfig(level=logging.INFO, handlers=[_file_handler, _console_handler])
logger = logging.getLogger("manage")


BACKEND_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "backend")
TERMINAL_RUN_STATES = {"COMPLETED", "PARTIALLY_COMPLETED", "FAILED", "CANCELLED"}


class CommandError(Exception):
    """A backend call or subprocess failed; message is operator-facing."""


# ═══════════════════════════════════════════════════════════
#  Policy Service Manager
# ═══════════════════════════════════════════════════════════

class PolicyServiceManager:
    """Operator commands for the policy service and its migration."""

    def __init__(self, base_url: str, actor_id: str):
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v1"
        self.actor_id = actor_id

    # ─── Helpers ──────────────────────────────────────────
    def _run(self, cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
        logger.info(f"[STEP] Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, check=check, text=True, capture_output=True, cwd=BACKEND_DIR)
        except subprocess.CalledProcessError as exc:
            for line in (exc.stderr or "").strip().splitlines():
                logger.error(f"  {line.strip()}")
            raise CommandError(f"Command failed (exit {exc.returncode})") from exc
        for line in (result.stdout + result.stderr).strip().splitlines():
            if line.strip():
                logger.info(f"  {line.strip()}")
        return result

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = path if path.startswith("http") else f"{self.api_url}{path}"
        data = json.dumps(body).encode() if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Content-Type", "application/json")
        req.add_header("X-Actor-Id", self.actor_id)
        try:
            with urllib.request.urlopen(req, timeout=60) as resp:
                return json.loads(resp.read().decode() or "{}")
        except urllib.error.HTTPError as exc:
            payload = json.loads(exc.read().decode() or "{}")
            message = payload.get("message") or payload.get("error") or exc.reason
            for problem in payload.get("errors") or []:
                logger.error(f"  {problem.get('field')}: {problem.get('message')}")
            raise CommandError(f"{method} {url} → {exc.code}: {message}") from exc
        except urllib.error.URLError as exc:
            raise CommandError(f"Backend unreachable at {self.base_url}: {exc.reason}") from exc

    def _print(self, data: Any, indent: str = "  ") -> None:
        for line in json.dumps(data, indent=2, default=str).splitlines():
            logger.info(f"{indent}{line}")

    # ─── Database ─────────────────────────────────────────
    def init_db(self) -> None:
        """Apply Alembic migrations up to head."""
        logger.info("\n=== Database Initialisation ===")
        self._run(["alembic", "upgrade", "head"])
        logger.info("[SUCCESS] Database schema is up to date")

    def seed(self) -> None:
        logger.info("\n=== Seeding Database ===")
        self._run([sys.executable, "-m", "scripts.seed_policies"])
        logger.info("[SUCCESS] Seed data inserted!")

    # ─── Workers ──────────────────────────────────────────
    def worker(self, queues: str) -> None:
        """Run a Celery worker in the foreground (Ctrl-C to stop)."""
        logger.info(f"\n=== Celery Worker ({queues}) ===")
        try:
            subprocess.run(["celery", "-A", "app.tasks", "worker", "-Q", queues, "-l", "info"], cwd=BACKEND_DIR)
        except KeyboardInterrupt:
            logger.info("\n[SUCCESS] Worker stopped")

    def beat(self) -> None:
        logger.info("\n=== Celery Beat ===")
        try:
            subprocess.run(["celery", "-A", "app.tasks", "beat", "-l", "info"], cwd=BACKEND_DIR)
        except KeyboardInterrupt:
            logger.info("\n[SUCCESS] Beat stopped")

    # ─── Status & checks ──────────────────────────────────
    def status(self) -> None:
        logger.info("\n=== Service Status ===")
        health = self._request("GET", f"{self.base_url}/health")
        logger.info(f"[SUCCESS] Backend: status={health.get('status')} env={health.get('env')} phase={health.get('phase')}")

        data = self._request("GET", "/migration/status")["data"]
        logger.info("\n=== Migration Status ===")
        logger.info(f"  Legacy policies remaining: {data['legacyRemaining']}")
        logger.info(f"  Policy templates:          {data['templates']}")
        logger.info(f"  Restorable backups:        {data['restorableBackups']}")
        for run in data.get("recentRuns", []):
            logger.info(f"  • {run['id']}  {run['status']:<20} converted={run['converted']} failed={run['failed']}")

    def preflight(self) -> None:
        """Report what a migration run would do, without changing anything."""
        logger.info("\n=== Migration Pre-flight ===")
        data = self._request("GET", "/migration/preflight")["data"]
        self._print(data)
        if data.get("ready"):
            logger.info("[SUCCESS] Legacy data is ready to migrate")
        else:
            logger.warning("[WARNING] Pre-flight found records that will be skipped")

    def verify(self) -> None:
        logger.info("\n=== Migration Integrity ===")
        data = self._request("GET", "/migration/verify")["data"]
        self._print(data)
        if data.get("healthy"):
            logger.info("[SUCCESS] No integrity problems found")
        else:
            logger.error("[ERROR] Integrity problems found")
            raise CommandError("Integrity check failed")

    # ─── Migration ────────────────────────────────────────
    def migrate(self, dry_run: bool, batch_size: Optional[int], inline: bool, poll: int = 5) -> None:
        """Start a migration run and follow it until it finishes."""
        label = "Dry Run" if dry_run else "Run"
        logger.info(f"\n=== Migration {label} ===")
        body: Dict[str, Any] = {"dryRun": dry_run, "inline": inline}
        if batch_size:
            body["batchSize"] = batch_size

        response = self._request("POST", "/migration/runs", body)
        run = response["data"]
        logger.info(f"[STEP] Run {run['id']} {response.get('message', '').lower()}")

        while run["status"] not in TERMINAL_RUN_STATES:
            time.sleep(poll)
            run = self._request("GET", f"/migration/runs/{run['id']}")["data"]
            logger.info(
                f"  batches={run['batchesCompleted']} read={run['totalRead']} "
                f"converted={run['converted']} skipped={run['skipped']} failed={run['failed']}"
            )

        self._print(run)
        if run["status"] == "COMPLETED":
            logger.info("[SUCCESS] Migration completed")
        elif run["status"] == "PARTIALLY_COMPLETED":
            logger.warning("[WARNING] Migration finished with skipped or failed records")
        else:
            logger.error(f"[ERROR] Migration {run['status'].lower()}: {run.get('errorMessage') or ''}")

    def cancel(self, run_id: str) -> None:
        logger.info("\n=== Cancel Migration ===")
        self._request("POST", f"/migration/runs/{run_id}/cancel")
        logger.info(f"[SUCCESS] Run {run_id} will stop before its next batch")

    def rollback(self, run_id: Optional[str], backup_id: Optional[str]) -> None:
        """Restore legacy rows from a run's (or one) backup."""
        logger.info("\n=== Migration Rollback ===")
        logger.warning("[WARNING] This deletes migrated instances and restores their legacy rows")
        confirm = input("\nType 'yes' to confirm: ")
        if confirm.strip().lower() != "yes":
            logger.info("[SUCCESS] Operation cancelled")
            return
        if backup_id:
            response = self._request("POST", f"/migration/backups/{backup_id}/rollback")
        else:
            response = self._request("POST", f"/migration/runs/{run_id}/rollback")
        self._print(response["data"])
        logger.info(f"[SUCCESS] {response.get('message')}")

    # ─── Expiry ───────────────────────────────────────────
    def sweep(self) -> None:
        logger.info("\n=== Expiry Sweep ===")
        response = self._request("POST", "/policy-templates/expiry/update-expired")
        logger.info(f"[SUCCESS] {response.get('message')}")


# ═══════════════════════════════════════════════════════════
#  CLI
# ═══════════════════════════════════════════════════════════

_C = ColorFormatter.COLORS

USAGE = f"""
{_C['HEADER']}Policy Service — operator tool{_C['RESET']}
{'═' * 50}

{_C['BOLD']}Usage:{_C['RESET']} python manage.py <command> [options]

{_C['BOLD']}Commands:{_C['RESET']}
    {_C['INFO']}init-db{_C['RESET']}         Apply Alembic migrations
    {_C['INFO']}seed{_C['RESET']}            Insert development seed data
    {_C['INFO']}worker{_C['RESET']}          Run a Celery worker (--queues=default,migration)
    {_C['INFO']}beat{_C['RESET']}            Run the Celery beat scheduler
    {_C['INFO']}status{_C['RESET']}          Backend health, phase and migration progress
    {_C['INFO']}preflight{_C['RESET']}       Check legacy data before migrating
    {_C['INFO']}verify{_C['RESET']}          Check template data integrity after migrating
    {_C['INFO']}migrate{_C['RESET']}         Start a migration run (--dry-run, --batch-size=N, --inline)
    {_C['INFO']}cancel{_C['RESET']}          Cancel a migration run (--run=ID)
    {_C['WARNING']}rollback{_C['RESET']}        Restore legacy rows (--run=ID or --backup=ID)
    {_C['INFO']}sweep{_C['RESET']}           Mark lapsed policies as expired now

{_C['BOLD']}Options:{_C['RESET']}
    --url=URL       Backend base URL (default $POLICY_API_URL or http://localhost:8000)
    --actor=ID      Actor recorded in the audit log (default "operator")

{_C['BOLD']}Examples:{_C['RESET']}
    python manage.py init-db
    python manage.py preflight
    python manage.py migrate --dry-run
    python manage.py migrate --batch-size=500
    python manage.py rollback --run=3f1c…
"""


def _option(opts: List[str], name: str) -> Optional[str]:
    for o in opts:
        if o.startswith(f"--{name}="):
            return o.split("=", 1)[1]
    return None


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(USAGE)
        sys.exit(0)

    command = sys.argv[1]
    opts = sys.argv[2:]

    mgr = PolicyServiceManager(
        base_url=_option(opts, "url") or os.getenv("POLICY_API_URL", "http://localhost:8000"),
        actor_id=_option(opts, "actor") or "operator",
    )

    try:
        if command == "init-db":
            mgr.init_db()
        elif command == "seed":
            mgr.seed()
        elif command == "worker":
            mgr.worker(_option(opts, "queues") or "default,migration")
        elif command == "beat":
            mgr.beat()
        elif command == "status":
            mgr.status()
        elif command == "preflight":
            mgr.preflight()
        elif command == "verify":
            mgr.verify()
        elif command == "migrate":
            size = _option(opts, "batch-size")
            mgr.migrate(dry_run="--dry-run" in opts, batch_size=int(size) if size else None, inline="--inline" in opts)
        elif command == "cancel":
            run_id = _option(opts, "run")
            if not run_id:
                raise CommandError("cancel needs --run=ID")
            mgr.cancel(run_id)
        elif command == "rollback":
            run_id, backup_id = _option(opts, "run"), _option(opts, "backup")
            if not (run_id or backup_id):
                raise CommandError("rollback needs --run=ID or --backup=ID")
            mgr.rollback(run_id, backup_id)
        elif command == "sweep":
            mgr.sweep()
        else:
            logger.error(f"Unknown command: {command}")
            print(USAGE)
            sys.exit(1)
    except (CommandError, ValueError) as exc:
        logger.error(f"[ERROR] Operation failed: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
