"""
Supabase client factory.

Clients are created per request with the user's access token so Row Level
Security scopes every query (including the check_cufe_exists RPC) to
auth.uid(). The publishable key is used; never the service_role key.
"""

import logging

from supabase import Client, create_client

from cufe_backend.config import settings

logger = logging.getLogger(__name__)


def get_supabase_client(access_token: str) -> Client:
    """
    Create an RLS-scoped Supabase client for one user.

    Args:
        access_token: The user's verified JWT (see auth.dependencies)

    Returns:
        Supabase client whose requests carry the user's token
    """
    client: Client = create_client(
        supabase_url=settings.SUPABASE_URL,
        supabase_key=settings.SUPABASE_PUBLISHABLE_KEY
    )

    # The token's 'sub' claim is what RLS policies compare against
    client.postgrest.auth(access_token)

    logger.debug("Created Supabase client with user token (RLS enforced)")
    return client
