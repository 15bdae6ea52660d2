"""
Database access for the invoice backend.

All access goes through RLS-scoped clients (user_id = auth.uid()). The only
query the pipeline runs itself is the check_cufe_exists RPC (see
services.duplicate_gate); invoices and expenses are stored by the
persistence collaborator.
"""

from .client import get_supabase_client

__all__ = ["get_supabase_client"]
