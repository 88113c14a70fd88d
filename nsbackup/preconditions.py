"""
Preconditions checked before a manual backup is started.

Each precondition inspects a BackupRequest and returns None when it passes
or a PreconditionFailure describing why the request is refused. The checks
run in order and the first failure wins.
"""

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from nsbackup.backup.guard import RunGuard


@dataclass(frozen=True)
class BackupRequest:
    """Who asked for a backup, and from where."""

    token: Optional[str] = None
    channel: Optional[str] = None


@dataclass(frozen=True)
class PreconditionFailure:
    name: str
    message: str
    status_code: int = 403


class RequireApiToken:
    """Only holders of the admin API token may trigger backups."""

    name = 'RequireApiToken'

    def __init__(self, token: Optional[str]):
        self.token = token

    def __call__(self, request: BackupRequest) -> Optional[PreconditionFailure]:
        if not self.token:
            return PreconditionFailure(self.name, 'Manual backups are disabled: no API token configured', 403)
        if not request.token or not hmac.compare_digest(request.token.encode('utf-8'), self.token.encode('utf-8')):
            return PreconditionFailure(self.name, 'You do not have permission to run backups', 403)
        return None


class BackupChannelOnly:
    """Restricts backups to the configured channels (no restriction when empty)."""

    name = 'BackupChannelOnly'

    def __init__(self, channel_ids: Iterable[str]):
        self.channel_ids = set(channel_ids)

    def __call__(self, request: BackupRequest) -> Optional[PreconditionFailure]:
        if not self.channel_ids:
            return None
        if request.channel not in self.channel_ids:
            return PreconditionFailure(self.name, 'Backups can only be run from the backup channel', 403)
        return None


class BackupRateLimit:
    """Refuses a backup while one is running or the cooldown has not elapsed."""

    name = 'BackupRateLimit'

    def __init__(self, guard: RunGuard, cooldown_seconds: int, clock: Optional[Callable[[], datetime]] = None):
        self.guard = guard
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def __call__(self, request: BackupRequest) -> Optional[PreconditionFailure]:
        if self.guard.is_running():
            return PreconditionFailure(self.name, 'A backup is already in progress. Please wait for it to complete.', 409)

        last = self.guard.last_completed_at
        if last is None or not self.cooldown_seconds:
            return None

        elapsed = (self._clock() - last).total_seconds()
        remaining = int(self.cooldown_seconds - elapsed)
        if remaining > 0:
            return PreconditionFailure(
                self.name,
                f'Please wait {remaining} seconds before running another backup',
                429
            )
        return None


def run_preconditions(checks: List[Callable], request: BackupRequest) -> Optional[PreconditionFailure]:
    """
    Run checks in order.

    Returns:
        The first PreconditionFailure, or None if every check passed
    """
    for check in checks:
        failure = check(request)
        if failure is not None:
            return failure
    return None


def default_preconditions(app_config, guard: RunGuard) -> List[Callable]:
    """Preconditions for manual backups, built from the Flask config."""
    return [
        RequireApiToken(app_config.get('BACKUP_API_TOKEN')),
        BackupChannelOnly(app_config.get('BACKUP_CHANNEL_IDS') or []),
        BackupRateLimit(guard, int(app_config.get('BACKUP_COOLDOWN_SECONDS') or 0)),
    ]
