"""Pydantic models for the Workspace resource.

These models provide:
1. Type-safe YAML parsing of Workspace manifests
2. Validation at the boundary (fail fast, fail loudly)
3. A status block the reconciler can rewrite and persist
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

API_VERSION = "tf.tfoperator.io/v1beta1"
KIND = "Workspace"

# Annotation that overrides the external name (directory identity)
EXTERNAL_NAME_ANNOTATION = "tfoperator.io/external-name"

# Finalizer blocking removal until infrastructure has been destroyed
WORKSPACE_FINALIZER = "tfoperator.io/workspace-protection"

VALID_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"


# =============================================================================
# Enums
# =============================================================================


class SourceMode(str, Enum):
    """Where the module configuration comes from."""

    INLINE = "Inline"
    REMOTE = "Remote"


class VarFileSource(str, Enum):
    """Where a var file is read from."""

    LITERAL = "Literal"
    CONFIG_MAP_KEY = "ConfigMapKey"
    SECRET_KEY = "SecretKey"


class VarFileFormat(str, Enum):
    """Encoding of a var file."""

    JSON = "JSON"
    YAML = "YAML"


class ManagementAction(str, Enum):
    """Actions the operator may take on a workspace."""

    OBSERVE = "Observe"
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    ALL = "*"


class WorkspacePhase(str, Enum):
    """Reconcile state machine phases."""

    UNINITIALIZED = "Uninitialized"
    INITIALIZED = "Initialized"
    PLANNED = "Planned"
    APPLIED = "Applied"
    DESTROYING = "Destroying"
    DESTROYED = "Destroyed"


class ConditionType(str, Enum):
    """Condition types reported in workspace status."""

    READY = "Ready"
    SYNCED = "Synced"
    OUTPUTS_AVAILABLE = "OutputsAvailable"


# =============================================================================
# Spec
# =============================================================================


class KeyReference(BaseModel):
    """Reference to one key of a ConfigMap or Secret."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    namespace: str | None = None
    name: Annotated[str, Field(min_length=1, max_length=253)]
    key: Annotated[str, Field(min_length=1, max_length=253)]


class SecretReference(BaseModel):
    """Namespaced reference to a Secret."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    namespace: str | None = None
    name: Annotated[str, Field(min_length=1, max_length=253)]


class Var(BaseModel):
    """A literal variable assignment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    key: Annotated[str, Field(min_length=1)]
    value: str


class VarFile(BaseModel):
    """A source of variable assignments resolved at reconcile time."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    source: VarFileSource
    format: VarFileFormat = VarFileFormat.JSON
    content: str | None = None
    config_map_key_ref: KeyReference | None = Field(None, alias="configMapKeyRef")
    secret_key_ref: KeyReference | None = Field(None, alias="secretKeyRef")

    @field_validator("source", mode="before")
    @classmethod
    def accept_inline_alias(cls, v: object) -> object:
        # "Inline" is the older spelling of "Literal"
        if v == "Inline":
            return VarFileSource.LITERAL
        return v

    @model_validator(mode="after")
    def validate_reference(self) -> VarFile:
        match self.source:
            case VarFileSource.LITERAL:
                if self.content is None:
                    raise ValueError("content is required when source is Literal")
            case VarFileSource.CONFIG_MAP_KEY:
                if self.config_map_key_ref is None:
                    raise ValueError("configMapKeyRef is required when source is ConfigMapKey")
            case VarFileSource.SECRET_KEY:
                if self.secret_key_ref is None:
                    raise ValueError("secretKeyRef is required when source is SecretKey")
        return self


class EnvVar(BaseModel):
    """An environment variable for terraform processes."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")]
    value: str | None = None
    config_map_key_ref: KeyReference | None = Field(None, alias="configMapKeyRef")
    secret_key_ref: KeyReference | None = Field(None, alias="secretKeyRef")

    @model_validator(mode="after")
    def validate_single_source(self) -> EnvVar:
        sources = [
            s for s in (self.value, self.config_map_key_ref, self.secret_key_ref) if s is not None
        ]
        if len(sources) != 1:
            raise ValueError("exactly one of value, configMapKeyRef or secretKeyRef is required")
        return self


class WorkspaceParameters(BaseModel):
    """Desired configuration of a workspace."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    source: SourceMode = SourceMode.INLINE
    module: Annotated[str, Field(min_length=1)]
    entrypoint: str = ""
    vars: list[Var] = Field(default_factory=list)
    var_files: list[VarFile] = Field(default_factory=list, alias="varFiles")
    env: list[EnvVar] = Field(default_factory=list)
    init_args: list[str] = Field(default_factory=list, alias="initArgs")
    plan_args: list[str] = Field(default_factory=list, alias="planArgs")
    apply_args: list[str] = Field(default_factory=list, alias="applyArgs")
    destroy_args: list[str] = Field(default_factory=list, alias="destroyArgs")

    @field_validator("entrypoint")
    @classmethod
    def validate_entrypoint(cls, v: str) -> str:
        # Entrypoint must stay inside the workspace directory
        parts = v.replace("\\", "/").split("/")
        if v.startswith("/") or ".." in parts:
            raise ValueError("entrypoint must be a relative path inside the module")
        return v.strip("/")


class WorkspaceSpec(BaseModel):
    """Workspace spec."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    for_provider: WorkspaceParameters = Field(alias="forProvider")
    write_connection_secret_to_ref: SecretReference | None = Field(
        None, alias="writeConnectionSecretToRef"
    )
    management_policies: list[ManagementAction] = Field(
        default_factory=lambda: [ManagementAction.ALL], alias="managementPolicies"
    )


# =============================================================================
# Metadata and status
# =============================================================================


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata the operator relies on."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=253, pattern=VALID_NAME_PATTERN)]
    namespace: str | None = None
    uid: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")


class Condition(BaseModel):
    """A Kubernetes-style status condition."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: ConditionType
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="lastTransitionTime"
    )

    @property
    def is_true(self) -> bool:
        return self.status == "True"


class WorkspaceObservation(BaseModel):
    """Observed state written back by the reconciler."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    checksum: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    phase: WorkspacePhase = WorkspacePhase.UNINITIALIZED
    last_drift_check: datetime | None = Field(None, alias="lastDriftCheck")


class WorkspaceStatus(BaseModel):
    """Workspace status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    at_provider: WorkspaceObservation = Field(
        default_factory=WorkspaceObservation, alias="atProvider"
    )
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Condition | None:
        """Return the condition of the given type, if set."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(self, condition: Condition) -> None:
        """Set a condition, keeping the transition time if the status is unchanged."""
        existing = self.get_condition(condition.type)
        if existing is None:
            self.conditions.append(condition)
            return
        if existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        self.conditions[self.conditions.index(existing)] = condition

    def remove_condition(self, condition_type: ConditionType) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition_type]


class Workspace(BaseModel):
    """A Workspace resource: desired module, variables and observed status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: WorkspaceSpec
    status: WorkspaceStatus = Field(default_factory=WorkspaceStatus)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != KIND:
            raise ValueError(f"kind must be {KIND}")
        return v

    @property
    def external_name(self) -> str:
        """Stable identity keying the on-disk directory."""
        return self.metadata.annotations.get(EXTERNAL_NAME_ANNOTATION) or self.metadata.name

    @property
    def owner_id(self) -> str:
        """Identity recorded in the directory owner marker."""
        return self.metadata.uid or self.metadata.name

    @property
    def deletion_requested(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return WORKSPACE_FINALIZER in self.metadata.finalizers

    def to_manifest(self) -> dict:
        """Serialize to a manifest mapping using API field names."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
