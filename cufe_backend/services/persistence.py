"""
Persistence collaborator contract.

Storing invoices and expenses is owned by the bookkeeping side of the
application. The processing pipeline only needs the two calls below and never
touches the database schema.
"""

from typing import List, Protocol, runtime_checkable

from cufe_backend.schemas.expenses import SuggestedExpense
from cufe_backend.schemas.invoices import ProcessedInvoice


@runtime_checkable
class InvoicePersistence(Protocol):
    async def save(self, invoice: ProcessedInvoice) -> str:
        """Store the invoice and return its id."""
        ...

    async def create_expenses(self, invoice_id: str, expenses: List[SuggestedExpense]) -> None:
        """Store the reviewed expenses linked to a saved invoice."""
        ...
