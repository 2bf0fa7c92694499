"""Per-provider incremental sync state.

Provider data is persisted as JSON on the connection row and is never
trusted as already typed: every read goes through ``parse_provider_data``.
"""

import json
from typing import Annotated, Any, ClassVar, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ProviderDataError, ValidationError
from .models import IntegrationProvider


class _ProviderDataBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Fields a tenant may change through the config endpoint
    configurable_fields: ClassVar[frozenset[str]] = frozenset()
    # Fields never returned by the public API
    private_fields: ClassVar[frozenset[str]] = frozenset()


class SlackProviderData(_ProviderDataBase):
    """Slack workspace state: per-channel message watermarks."""

    configurable_fields: ClassVar[frozenset[str]] = frozenset({"selected_channel_ids"})

    provider: Literal["SLACK"] = "SLACK"
    slack_team_id: Optional[str] = None
    slack_bot_user_id: Optional[str] = None
    team_domain: Optional[str] = None
    channel_timestamps: dict[str, str] = Field(default_factory=dict)
    selected_channel_ids: Optional[list[str]] = None


class GitHubProviderData(_ProviderDataBase):
    """GitHub App installation state.

    ``repo_cursors`` holds the newest ``updated_at`` seen per repository;
    ``last_synced_at`` is the newest across all of them.
    """

    private_fields: ClassVar[frozenset[str]] = frozenset({"github_installation_id"})

    provider: Literal["GITHUB"] = "GITHUB"
    github_installation_id: int
    installation_owner: Optional[str] = None
    last_synced_at: Optional[str] = None
    repo_cursors: dict[str, str] = Field(default_factory=dict)


class LinearProviderData(_ProviderDataBase):
    """Linear workspace state: issue updatedAt watermark plus page cursor.

    While ``issue_cursor`` is set the watermark stays fixed so the page
    cursor remains valid; the newest ``updatedAt`` seen is held in
    ``pending_max_updated_at`` until the last page.
    """

    provider: Literal["LINEAR"] = "LINEAR"
    linear_organization_id: Optional[str] = None
    workspace_slug: Optional[str] = None
    last_issue_synced_at: Optional[str] = None
    issue_cursor: Optional[str] = None
    pending_max_updated_at: Optional[str] = None


class NotionProviderData(_ProviderDataBase):
    """Notion workspace state.

    ``search_cursor`` and ``pending_max_edited_time`` are only set while a
    multi-page discovery pass is in progress; ``last_synced_at`` advances
    once the pass reaches pages at or before the previous watermark.
    """

    provider: Literal["NOTION"] = "NOTION"
    notion_workspace_id: Optional[str] = None
    workspace_name: Optional[str] = None
    last_synced_at: Optional[str] = None
    search_cursor: Optional[str] = None
    pending_max_edited_time: Optional[str] = None


ProviderData = Annotated[
    Union[SlackProviderData, GitHubProviderData, LinearProviderData, NotionProviderData],
    Field(discriminator="provider"),
]

_provider_data_adapter: TypeAdapter[Any] = TypeAdapter(ProviderData)

M = TypeVar("M", bound=BaseModel)


def parse_provider_data(
    raw: Any,
    expected_provider: Optional[IntegrationProvider] = None,
) -> ProviderData:
    """
    Validate raw persisted provider data.

    Args:
        raw: JSON string or decoded mapping
        expected_provider: Provider the owning connection belongs to

    Returns:
        Typed provider data model

    Raises:
        ProviderDataError: If the data is malformed or tagged for another provider
    """
    label = expected_provider.value if expected_provider else "unknown"
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProviderDataError(label, f"not valid JSON: {e}") from e
    try:
        data = _provider_data_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ProviderDataError(label, str(e)) from e
    if expected_provider is not None and data.provider != expected_provider.value:
        raise ProviderDataError(
            label, f"tagged for provider {data.provider}"
        )
    return data


def dump_provider_data(data: ProviderData) -> dict[str, Any]:
    """Serialize provider data for storage or job payloads."""
    return data.model_dump(mode="json")


def public_provider_data(data: ProviderData) -> dict[str, Any]:
    """Provider data with private fields removed, for API responses."""
    return data.model_dump(mode="json", exclude=set(data.private_fields))


def merge_provider_config(data: ProviderData, updates: dict[str, Any]) -> ProviderData:
    """
    Apply tenant-editable settings on top of the current provider data.

    Raises:
        ValidationError: If ``updates`` touches fields the tenant cannot edit
        ProviderDataError: If the merged result fails validation
    """
    not_allowed = sorted(set(updates) - data.configurable_fields)
    if not_allowed:
        raise ValidationError(
            f"Fields not configurable for {data.provider}: {', '.join(not_allowed)}",
            details={"fields": not_allowed},
        )
    merged = {**dump_provider_data(data), **updates, "provider": data.provider}
    return parse_provider_data(merged, IntegrationProvider(data.provider))


def expect_provider_data(data: ProviderData, model: type[M]) -> M:
    """
    Narrow provider data to the model a connector works with.

    Raises:
        ProviderDataError: If ``data`` belongs to another provider
    """
    if not isinstance(data, model):
        raise ProviderDataError(
            str(getattr(data, "provider", "unknown")),
            f"expected {model.__name__}, got {type(data).__name__}",
        )
    return data
