#!/usr/bin/env python3
"""
Supabase-backed ecosystem lookup store.

Reads the ecosystem reference table over the Supabase REST API. The supabase
client is synchronous, so queries run in a worker thread.
"""

import asyncio
import logging
from typing import Optional

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

from core.env_loader import get_env_var
from core.exceptions import EcosystemLookupError, ReferenceMisconfigured
from core.models import EcosystemMapping

logger = logging.getLogger(__name__)

DEFAULT_TABLE = 'Ecosystem Mapping'

# PostgREST / Postgres codes meaning the table itself is wrong, not the network
MISCONFIGURED_CODES = {'42P01', '42703', 'PGRST106', 'PGRST205'}


class SupabaseEcosystemStore:
    """Ecosystem lookup store using the Supabase REST API."""

    def __init__(self, client: Optional[Client] = None, table: str = DEFAULT_TABLE):
        """
        Initialize store.

        Args:
            client: Supabase client (created from environment if None)
            table: Reference table name
        """
        self.client = client or self._create_client()
        self.table = table
        logger.info(f"Supabase ecosystem store initialized for table {table!r}")

    def _create_client(self) -> Client:
        """Create and configure Supabase client."""
        supabase_url = get_env_var('SUPABASE_URL', required=True)

        # Try service key first (for full permissions), fallback to anon key
        supabase_key = get_env_var('SUPABASE_SERVICE_KEY') or get_env_var('SUPABASE_ANON_KEY', required=True)
        return create_client(supabase_url, supabase_key)

    def _query(self, category: str) -> Optional[EcosystemMapping]:
        result = (self.client.table(self.table)
                  .select('index, ecosystem, category')
                  .eq('category', category)
                  .order('index')
                  .limit(1)
                  .execute())
        rows = result.data or []
        return EcosystemMapping.from_row(rows[0]) if rows else None

    async def find_by_category(self, category: str) -> Optional[EcosystemMapping]:
        """
        Find the ecosystem row for a category.

        Raises:
            ReferenceMisconfigured: Table or column missing
            EcosystemLookupError: Any other API or network failure
        """
        try:
            return await asyncio.to_thread(self._query, category)
        except APIError as e:
            if e.code in MISCONFIGURED_CODES:
                raise ReferenceMisconfigured(self.table, e) from e
            raise EcosystemLookupError(category, e) from e
        except httpx.HTTPError as e:
            raise EcosystemLookupError(category, e) from e
