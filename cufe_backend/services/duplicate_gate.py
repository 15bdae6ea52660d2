"""
Duplicate gate: has this user already processed this CUFE?

The gate is a read-only collaborator. The pipeline only depends on the
DuplicateGate protocol; SupabaseDuplicateGate is the production
implementation backed by the `check_cufe_exists` RPC, which is scoped by
Row Level Security to the authenticated user.
"""

import logging
from typing import Awaitable, Callable, Protocol, Union, runtime_checkable

from supabase import Client

from cufe_backend.utils.logging import short_cufe

logger = logging.getLogger(__name__)


@runtime_checkable
class DuplicateGate(Protocol):
    """Side-effect-free duplicate lookup."""

    async def exists(self, user_id: str, normalized_cufe: str) -> bool:
        ...


def checker_for(gate: DuplicateGate, user_id: str) -> Callable[[str], Awaitable[bool]]:
    """Bind a gate to a user, producing the exists_checker validate_cufe expects."""

    async def _check(normalized_cufe: str) -> bool:
        return await gate.exists(user_id, normalized_cufe)

    return _check


class SupabaseDuplicateGate:
    """DuplicateGate backed by the check_cufe_exists RPC."""

    def __init__(self, supabase_client: Client):
        self._client = supabase_client

    async def exists(self, user_id: str, normalized_cufe: str) -> bool:
        """
        Ask the database whether the user already registered this CUFE.

        Raises:
            Exception: If the RPC call fails (callers map it to NETWORK_ERROR)
        """
        logger.debug(f"Checking CUFE {short_cufe(normalized_cufe)} for user {user_id}")

        result = self._client.rpc(
            "check_cufe_exists",
            {
                "p_user_id": user_id,
                "p_cufe_code": normalized_cufe,
            },
        ).execute()

        data: Union[bool, list, None] = getattr(result, "data", None)

        # The RPC returns a scalar boolean; older deployments wrap it in a row
        if isinstance(data, list):
            if not data:
                return False
            first = data[0]
            if isinstance(first, dict):
                return bool(first.get("check_cufe_exists") or first.get("exists"))
            return bool(first)

        return bool(data)
