from __future__ import annotations

from printplan.data.schema.core_schema import ensure_schema as ensure_core_schema
from printplan.data.schema.sync_schema import ensure_local_cache_schema, ensure_store_schema

__all__ = ["ensure_core_schema", "ensure_local_cache_schema", "ensure_store_schema"]
