"""Import all models so SQLModel.metadata picks them up."""

from controlplane.models.prompt import (
    Prompt,
    PromptCategory,
    PromptCreate,
    PromptRead,
    PromptUpdate,
    PromptVersion,
    PromptVersionRead,
)
from controlplane.models.provider import (
    ModelSpec,
    Provider,
    ProviderCreate,
    ProviderKind,
    ProviderModel,
    ProviderRead,
    ProviderUpdate,
)
from controlplane.models.usage import (
    AlertKind,
    ModelOverride,
    ModelOverrideSpec,
    UsageAlert,
    UsageAlertRead,
    UsageHistory,
    UsageHistoryRead,
    UsageRead,
    UsageRecord,
    UsageSettingsUpdate,
)

__all__ = [
    "AlertKind",
    "ModelOverride",
    "ModelOverrideSpec",
    "ModelSpec",
    "Prompt",
    "PromptCategory",
    "PromptCreate",
    "PromptRead",
    "PromptUpdate",
    "PromptVersion",
    "PromptVersionRead",
    "Provider",
    "ProviderCreate",
    "ProviderKind",
    "ProviderModel",
    "ProviderRead",
    "ProviderUpdate",
    "UsageAlert",
    "UsageAlertRead",
    "UsageHistory",
    "UsageHistoryRead",
    "UsageRead",
    "UsageRecord",
    "UsageSettingsUpdate",
]
