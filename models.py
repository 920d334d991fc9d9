from pydantic import BaseModel
from typing import Optional, Dict, Any, List

class LicenseVerificationResponse(BaseModel):
    valid: bool
    key: Optional[Any] = None
    expiry: Optional[Any] = None
    status: str
    message: str
    days_remaining: int
    note: Any = ""
    timestamp: str

class MissingKeyResponse(BaseModel):
    valid: bool = False
    message: str

class LicenseSyncRequest(BaseModel):
    licenses: List[Any]

class LicenseCommitRequest(BaseModel):
    licenses: List[Any]
    message: Optional[str] = None

class CommitInfo(BaseModel):
    sha: Optional[str] = None
    message: str
    url: Optional[str] = None

class LicenseSyncResponse(BaseModel):
    success: bool
    message: str
    count: int
    commit: Optional[CommitInfo] = None
    file_path: Optional[str] = None
    licenses: Optional[List[Dict[str, Any]]] = None
    note: Optional[str] = None
    json_content: Optional[str] = None

class LicenseCommitResponse(BaseModel):
    success: bool
    message: str
    count: int
    commit: CommitInfo

class ErrorEnvelope(BaseModel):
    success: bool = False
    error: str
    message: str
    retry: Optional[bool] = None
    retry_after: Optional[int] = None

class CacheRefreshResponse(BaseModel):
    success: bool
    count: int

class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    cacheBackend: str
    remoteWritable: bool
    staticLicenses: int
