"""
Backup Job Models
Records, part descriptors, job states and the messages exchanged with the controller
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, PrivateAttr

from .config import BackupJobConfig
from .exceptions import UnexpectedError

# ============================================================================
# Enums
# ============================================================================

class JobState(str, Enum):
    """Backup job lifecycle"""
    IDLE = "idle"
    DUMPER_READY = "dumper_ready"
    KEYS_READY = "keys_ready"
    STREAMING_UPLOAD = "streaming_upload"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MessageType(str, Enum):
    """Controller <-> worker message types"""
    START_BACKUP = "startBackup"
    ERROR = "error"

# ============================================================================
# Upload Models
# ============================================================================

class PartEtag(BaseModel):
    """Acknowledgement of one uploaded part"""
    part_number: int = Field(..., ge=1)
    etag: str


class PartUploadDescriptor(BaseModel):
    """Where and how to send one part, discarded once the part is acknowledged"""
    part_number: int = Field(..., ge=1)
    url: str
    part_hash: str = Field(..., description="Base64 MD5 of the part, sent as Content-MD5")


class BackupRecord(BaseModel):
    """
    One backup attempt

    Seeded by the controller (premium backups come with server-side fields),
    filled as parts succeed and frozen once the upload is finalized.
    """
    id: Optional[str] = Field(None, description="Server-assigned backup ID (premium)")
    filename: Optional[str] = Field(None, description="Object name in the bucket")
    s3_upload_id: Optional[str] = Field(None, description="Multipart upload session ID")
    parts: List[PartEtag] = []
    hash: Optional[str] = Field(None, description="Hex MD5 of the whole envelope")

    _frozen: bool = PrivateAttr(default=False)

    class Config:
        extra = "allow"

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add_part(self, part: PartEtag) -> None:
        """Append an acknowledged part, enforcing the 1..N sequence"""
        if self._frozen:
            raise UnexpectedError("Backup record is frozen, cannot add parts")

        expected = len(self.parts) + 1
        if part.part_number != expected:
            raise UnexpectedError(
                f"Part {part.part_number} acknowledged out of order, expected part {expected}"
            )
        self.parts.append(part)

    def freeze(self) -> "BackupRecord":
        self._frozen = True
        return self

    def to_api(self) -> Dict[str, Any]:
        """Representation sent to the DBacked API"""
        return self.model_dump(exclude={"parts", "hash"}, exclude_none=True)

# ============================================================================
# Job Result
# ============================================================================

class JobResult(BaseModel):
    """Terminal outcome of a backup job"""
    state: JobState
    record: BackupRecord
    error: Optional[str] = Field(None, description="'<code-or-body>\\n<trace>' when the job failed")

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.SUCCEEDED

# ============================================================================
# Controller Messages
# ============================================================================

class BackupInfo(BaseModel):
    """What the controller knows about the backup before it starts"""
    backup: Optional[BackupRecord] = None

    class Config:
        extra = "allow"


class StartBackupPayload(BaseModel):
    config: BackupJobConfig
    backup_info: BackupInfo = Field(default_factory=BackupInfo, alias="backupInfo")

    class Config:
        populate_by_name = True


class StartBackupCommand(BaseModel):
    """{"type": "startBackup", "payload": {"config": ..., "backupInfo": ...}}"""
    type: MessageType
    payload: StartBackupPayload


class ErrorMessage(BaseModel):
    """{"type": "error", "payload": "<code-or-body>\\n<trace>"}"""
    type: MessageType = MessageType.ERROR
    payload: str
