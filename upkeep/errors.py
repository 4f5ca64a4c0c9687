"""Error taxonomy for upkeep."""

from __future__ import annotations


class UpkeepError(Exception):
    """Base error for upkeep."""


class ConfigError(UpkeepError):
    """Config validation error."""


class ScheduleError(ConfigError):
    """Schedule expression rejected by the accepted grammar."""


class ProfileError(UpkeepError):
    """Profile registry operation refused."""


class ProfileNotFound(ProfileError):
    pass


class TimerError(UpkeepError):
    """Platform scheduler call failed."""


class LockBusy(UpkeepError):
    """Another live owner holds the job lock."""

    def __init__(self, job_name: str, owner_id: str = "") -> None:
        super().__init__(f"Job {job_name} is locked by {owner_id or 'another process'}")
        self.job_name = job_name
        self.owner_id = owner_id


class PreconditionNotMet(UpkeepError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class OperationFailed(UpkeepError):
    pass


class IntegrityCheckFailed(UpkeepError):
    pass


class SnapshotFailed(UpkeepError):
    pass


class PostVerificationFailed(UpkeepError):
    pass


class RollbackFailed(UpkeepError):
    pass
