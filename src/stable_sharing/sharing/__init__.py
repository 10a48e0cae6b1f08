"""Share tokens for horses, lab results and media, share packs, and
read-time view resolution."""

from .model import (
    FINAL_RESULT_STATUS,
    SHARE_URL_PATHS,
    InMemoryShareTokenRepository,
    ShareState,
    ShareToken,
    ShareTokenRepository,
    SubjectKind,
    generate_share_token,
    hash_token,
    is_share_effective,
    share_state,
    share_url,
)
from .packs import (
    MOST_RESTRICTIVE_PACK_KEY,
    SYSTEM_PACKS,
    InMemorySharePackStore,
    SharePack,
    SharePackCatalog,
    SharePackStore,
)
from .service import (
    CreateShareOptions,
    IssuedShare,
    ListedShare,
    ShareListing,
    ShareService,
)
from .resolver import (
    CATEGORY_KEYS,
    IDENTIFYING_FIELDS,
    SIGNED_URL_TTL_SECONDS,
    GrantView,
    LabResultShareView,
    MediaShareView,
    ShareView,
    ShareViewResolver,
)

__all__ = [
    'CATEGORY_KEYS',
    'CreateShareOptions',
    'FINAL_RESULT_STATUS',
    'GrantView',
    'IDENTIFYING_FIELDS',
    'InMemorySharePackStore',
    'InMemoryShareTokenRepository',
    'IssuedShare',
    'LabResultShareView',
    'ListedShare',
    'MediaShareView',
    'MOST_RESTRICTIVE_PACK_KEY',
    'SHARE_URL_PATHS',
    'SIGNED_URL_TTL_SECONDS',
    'SYSTEM_PACKS',
    'SharePack',
    'SharePackCatalog',
    'SharePackStore',
    'ShareListing',
    'ShareService',
    'ShareState',
    'ShareToken',
    'ShareTokenRepository',
    'ShareView',
    'ShareViewResolver',
    'SubjectKind',
    'generate_share_token',
    'hash_token',
    'is_share_effective',
    'share_state',
    'share_url',
]
