"""
Pydantic schemas for suggested expenses and categorization rules.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from cufe_backend.schemas.invoices import InvoiceItem


class SuggestedExpense(BaseModel):
    """
    Expense proposed from an invoice for manual review.

    Derived data: never persisted by the pipeline itself. Its lifecycle ends
    when it is handed to the persistence collaborator.
    """
    id: str = Field(..., description="Temporary id for the review screen")
    description: str
    amount: float
    transaction_date: str = Field(..., description="ISO YYYY-MM-DD")
    suggested_category: str = Field(..., description="Category key, e.g. GROCERIES")
    place: Optional[str] = Field(None, description="Supplier name")
    original_item: Optional[InvoiceItem] = None
    confidence_score: float = Field(..., ge=0.0, le=1.0)


class CategoryMappingRule(BaseModel):
    """
    Supplier-based categorization rule.

    supplier_pattern is a case-insensitive regular expression matched against
    the supplier name; keywords are plain substrings that also count as a
    supplier match.
    """
    supplier_pattern: str
    suggested_category: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)
    nit_pattern: Optional[str] = Field(None, description="Optional regex for the supplier NIT")
