from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class Scenario(BaseModel):
    label: str
    url: Optional[str] = None
    referenceUrl: Optional[str] = None
    selectors: Optional[List[str]] = None
    misMatchThreshold: Optional[float] = Field(default=None, ge=0)
    hideSelectors: Optional[List[str]] = None
    delay: Optional[int] = Field(default=None, ge=0)

    model_config = {"extra": "allow"}


class Viewport(BaseModel):
    label: str
    width: int
    height: int

    model_config = {"extra": "allow"}

    @field_validator("width", "height")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Viewport dimensions must be positive integers.")
        return value


class ValidationType(str, Enum):
    success = "SUCCESS"
    invalid_format = "INVALID_FORMAT"
    client_error = "CLIENT_ERROR"
    server_error = "SERVER_ERROR"
    connection_refused = "CONNECTION_REFUSED"
    dns_error = "DNS_ERROR"
    timeout = "TIMEOUT"
    connection_reset = "CONNECTION_RESET"
    network_error = "NETWORK_ERROR"


NO_URL_REASON = "NO_URL"


class Severity(str, Enum):
    info = "info"
    medium = "medium"
    high = "high"


class ValidationOutcome(BaseModel):
    valid: bool
    type: ValidationType
    message: str
    severity: Severity
    statusCode: Optional[int] = None

    model_config = {"use_enum_values": True}


class InvalidScenarioRecord(BaseModel):
    scenario: Scenario
    reason: str
    message: str
    validation: Optional[ValidationOutcome] = None
    matchedFilter: Optional[bool] = None


class DimensionDifference(BaseModel):
    width: float = 0
    height: float = 0


class DiffSummary(BaseModel):
    isSameDimensions: bool = True
    dimensionDifference: DimensionDifference = Field(default_factory=DimensionDifference)
    misMatchPercentage: float = 0
    analysisTime: float = 0

    model_config = {"extra": "allow"}

    @field_validator("misMatchPercentage", mode="before")
    @classmethod
    def coerce_percentage(cls, value: Any) -> Any:
        # The engine serializes mismatch percentages as strings ("0.42").
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                return 0
        return value


class ViewportSize(BaseModel):
    width: int
    height: int


class TestPair(BaseModel):
    label: str
    viewportLabel: Optional[str] = None
    url: Optional[str] = None
    referenceUrl: Optional[str] = None
    selector: Optional[str] = None
    fileName: Optional[str] = None
    viewportSize: Optional[ViewportSize] = None
    diff: Optional[DiffSummary] = None
    reference: Optional[str] = None
    test: Optional[str] = None

    model_config = {"extra": "allow"}


class TestStatus(str, Enum):
    passed = "pass"
    failed = "fail"


class TestRecord(BaseModel):
    pair: TestPair
    status: TestStatus
    networkError: Optional[bool] = None
    errorType: Optional[str] = None
    error: Optional[str] = None
    matchedFilter: Optional[bool] = None
    timestamp: Optional[str] = None

    model_config = {"extra": "allow", "use_enum_values": True}

    __test__ = False


class ReportDocument(BaseModel):
    tests: List[TestRecord] = Field(default_factory=list)
    hasNetworkErrors: bool = False
    networkErrorCount: int = 0
    totalScenarios: int = 0
    validScenariosCount: int = 0
    invalidScenariosCount: int = 0

    model_config = {"extra": "allow"}


class EngineOutcomeKind(str, Enum):
    completed = "completed"
    differences_found = "differences_found"
    fatal = "fatal"


class BackupTestSummary(BaseModel):
    totalTests: int = 0
    passedTests: int = 0
    failedTests: int = 0
    avgMismatch: float = 0.0


class BackupScenario(BaseModel):
    label: Optional[str] = None
    viewport: Optional[str] = None
    status: Optional[str] = None
    mismatchPercentage: float = 0.0
    url: Optional[str] = None


class BackupSnapshot(BaseModel):
    id: str
    name: str
    description: str
    projectId: str
    timestamp: str
    testSummary: BackupTestSummary = Field(default_factory=BackupTestSummary)
    scenarios: List[BackupScenario] = Field(default_factory=list)


class BackupStats(BaseModel):
    totalBackups: int = 0
    totalTests: int = 0
    totalSize: int = 0
    averageFailureRate: float = 0.0


class BackupCreate(BaseModel):
    backupName: Optional[str] = None
    description: Optional[str] = None


class ProjectBase(BaseModel):
    name: str
    description: Optional[str] = None


class ProjectCreate(ProjectBase):
    pass


class Project(ProjectBase):
    id: str
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class ScenarioList(BaseModel):
    scenarios: List[Scenario] = Field(default_factory=list)


class RunRequest(BaseModel):
    filter: Optional[str] = None


class RunStage(str, Enum):
    validating = "validating"
    materializing = "materializing"
    running_engine = "running_engine"
    success = "success"
    diffs_found = "diffs_found"
    hard_error = "hard_error"
    aborted = "aborted"


class SettingsUpdate(BaseModel):
    validation_timeout_ms: Optional[int] = Field(default=None, ge=1)
    slow_host_timeout_ms: Optional[int] = Field(default=None, ge=1)
    slow_host_patterns: Optional[List[str]] = None
    validation_max_redirects: Optional[int] = Field(default=None, ge=0)
    report_stability_attempts: Optional[int] = Field(default=None, ge=1)
    report_stability_interval_ms: Optional[int] = Field(default=None, ge=0)
    report_stability_settle_ms: Optional[int] = Field(default=None, ge=0)
    report_merge_attempts: Optional[int] = Field(default=None, ge=1)
    report_merge_backoff_ms: Optional[int] = Field(default=None, ge=0)
    engine_runtime: Optional[str] = None
    engine_image: Optional[str] = None
    engine_timeout_seconds: Optional[int] = Field(default=None, ge=1)


class ProgressEvent(BaseModel):
    sequence: int
    event: str
    payload: Dict[str, Any]
    timestamp: str
