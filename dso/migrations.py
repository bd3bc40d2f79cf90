from __future__ import annotations

from typing import Callable, Sequence

from . import db
from .errors import MigrationApplyError
from .runtime import MigrationJob, MigrationStep
from .shell import CommandResult, run_command

# (service_name, argv) -> result; runs a step inside a supervised service.
ServiceExec = Callable[[str, Sequence[str]], CommandResult]


class MigrationRunner:
    """Applies pending schema migrations exactly once per version.

    History lives in the append-only `migrations` table. Versions are applied
    strictly in ascending order and each success is recorded before the next
    one starts, so a failed run can simply be repeated later: it resumes at
    the first unapplied version.
    """

    def __init__(self, job: MigrationJob, service_exec: ServiceExec | None = None, step_timeout_s: float | None = None):
        self.job = job
        self.service_exec = service_exec
        self.step_timeout_s = step_timeout_s

    def applied_versions(self) -> set[int]:
        return {r.version for r in db.list_migrations()}

    def pending(self) -> list[MigrationStep]:
        applied = self.applied_versions()
        return [s for s in sorted(self.job.steps, key=lambda s: s.version) if s.version not in applied]

    def _apply(self, step: MigrationStep) -> CommandResult:
        if step.service:
            if self.service_exec is None:
                return CommandResult(1, f"no way to reach service '{step.service}'")
            return self.service_exec(step.service, step.command)
        return run_command(step.command, timeout_s=self.step_timeout_s)

    def run(self) -> list[db.MigrationRecord]:
        """Apply all pending versions. Returns the records appended by this run.

        Raises MigrationApplyError on the first failing version; later versions
        are not attempted.
        """
        steps = self.pending()
        if not steps:
            db.log_event("INFO", "Migrations up to date", service_name=self.job.name)
            return []

        applied: list[db.MigrationRecord] = []
        for step in steps:
            db.log_event("INFO", f"Applying migration {step.version}", service_name=self.job.name)
            try:
                res = self._apply(step)
            except Exception as e:
                res = CommandResult(1, f"{type(e).__name__}: {e}")
            if not res.ok:
                detail = res.output.splitlines()[-1] if res.output else f"exit {res.returncode}"
                db.log_event("ERROR", f"Migration {step.version} failed: {detail}", service_name=self.job.name)
                raise MigrationApplyError(step.version, detail)
            applied.append(db.append_migration(step.version))
            db.log_event("INFO", f"Applied migration {step.version}", service_name=self.job.name)
        return applied
