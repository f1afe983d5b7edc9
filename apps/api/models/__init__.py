"""Models package."""

from .generated_asset import GeneratedAsset
from .asset_rejection import AssetRejection
from .asset_configuration import AssetConfiguration
from .generation_queue import GenerationQueueEntry
from .asset_audit_log import AssetAuditLog
from .prompt_template import PromptTemplate
from .reference_image import ReferenceImage, AssetReferenceLink
from .composite import AvatarItem, CompanyAvatar, SceneTemplate, CompositeCacheEntry
