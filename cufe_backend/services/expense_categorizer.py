"""
Rule-based categorization of invoice items into suggested expenses.

Two layers, tried in order:
1. ITEM_KEYWORDS: whole-word match on the item description
2. CategoryMappingRule list: supplier name / NIT, first match wins

Anything unmatched is OTHER. Suggested expenses are only proposals for the
review screen; nothing here touches the database.
"""

import re
from collections import Counter
from datetime import date
from typing import Iterable, List, Optional, Sequence, Tuple

from cufe_backend.schemas.expenses import CategoryMappingRule, SuggestedExpense
from cufe_backend.schemas.invoices import InvoiceDetails, InvoiceItem
from cufe_backend.services.invoice_parser import fold_accents
from cufe_backend.utils.logging import get_logger

logger = get_logger(__name__)

GROCERIES = "GROCERIES"
TRANSPORT = "TRANSPORT"
HOUSING = "HOUSING"
DEBT = "DEBT"
OTHER = "OTHER"

CATEGORIES = (GROCERIES, TRANSPORT, HOUSING, DEBT, OTHER)

# Checked in this order; keywords are accent-free and lower-case
ITEM_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (GROCERIES, (
        "comida", "alimento", "bebida", "supermercado", "tienda", "mercado",
        "frutas", "verduras", "gaseosa", "food", "grocery", "groceries", "beverage",
    )),
    (TRANSPORT, (
        "combustible", "gasolina", "uber", "taxi", "transporte", "peaje",
        "parking", "parqueadero", "fuel",
    )),
    (HOUSING, (
        "arriendo", "alquiler", "servicios", "agua", "luz", "gas", "internet",
        "telefono", "rent", "electricity",
    )),
    (DEBT, (
        "cuota", "credito", "prestamo", "financiacion", "tarjeta", "loan",
    )),
)

# Whole words with an optional plural ending ("gas" matches "gases", not "gaseosa")
_KEYWORD_PATTERNS = tuple(
    (category, re.compile(r"\b(?:" + "|".join(map(re.escape, keywords)) + r")(?:s|es)?\b"))
    for category, keywords in ITEM_KEYWORDS
)

DEFAULT_CATEGORY_RULES: List[CategoryMappingRule] = [
    CategoryMappingRule(
        supplier_pattern=r"supermercado|tienda|market",
        suggested_category=GROCERIES,
        confidence=0.8,
        keywords=["almacenes", "minimercado"],
    ),
    CategoryMappingRule(
        supplier_pattern=r"gasolina|combustible|\besso\b|\bshell\b",
        suggested_category=TRANSPORT,
        confidence=0.8,
        keywords=["estacion de servicio"],
    ),
    CategoryMappingRule(
        supplier_pattern=r"\bepm\b|\benel\b|\bclaro\b|movistar",
        suggested_category=HOUSING,
        confidence=0.75,
        keywords=["empresas publicas", "acueducto"],
    ),
    CategoryMappingRule(
        supplier_pattern=r"banco|financiera|credito",
        suggested_category=DEBT,
        confidence=0.7,
        keywords=["cooperativa"],
    ),
]

ITEM_CONFIDENCE = 0.7
GROUPED_CONFIDENCE = 0.8
WHOLE_INVOICE_CONFIDENCE = 0.6
# Above this many items a single grouped expense is suggested instead
MAX_ITEMIZED_EXPENSES = 10


def category_from_description(description: Optional[str]) -> Optional[str]:
    """Keyword-table category for an item description, or None."""
    if not description:
        return None
    folded = fold_accents(description)
    for category, pattern in _KEYWORD_PATTERNS:
        if pattern.search(folded):
            return category
    return None


def rule_matches(rule: CategoryMappingRule, supplier_name: str, supplier_nit: Optional[str] = None) -> bool:
    folded = fold_accents(supplier_name or "")
    if folded and re.search(rule.supplier_pattern, folded, re.IGNORECASE):
        return True
    if folded and any(fold_accents(keyword) in folded for keyword in rule.keywords):
        return True
    if rule.nit_pattern and supplier_nit:
        return re.search(rule.nit_pattern, supplier_nit) is not None
    return False


def category_from_supplier(
    supplier_name: str,
    rules: Sequence[CategoryMappingRule] = DEFAULT_CATEGORY_RULES,
    supplier_nit: Optional[str] = None,
) -> str:
    for rule in rules:
        if rule_matches(rule, supplier_name, supplier_nit):
            return rule.suggested_category
    return OTHER


def categorize(
    item: Optional[InvoiceItem],
    supplier_name: str = "",
    rules: Sequence[CategoryMappingRule] = DEFAULT_CATEGORY_RULES,
    supplier_nit: Optional[str] = None,
) -> str:
    """
    Suggest a category for one item.

    The item description decides first; the supplier rules are the
    fallback; OTHER when neither matches.
    """
    category = category_from_description(item.description if item else None)
    if category:
        return category
    return category_from_supplier(supplier_name, rules, supplier_nit)


def _dominant_category(categories: Iterable[str], fallback: str) -> str:
    counts = Counter(c for c in categories if c != OTHER)
    if not counts:
        return fallback
    return counts.most_common(1)[0][0]


def build_suggested_expenses(
    items: List[InvoiceItem],
    invoice_details: Optional[InvoiceDetails] = None,
    supplier_name: str = "",
    total_amount: float = 0.0,
    rules: Sequence[CategoryMappingRule] = DEFAULT_CATEGORY_RULES,
    supplier_nit: Optional[str] = None,
) -> List[SuggestedExpense]:
    """
    Propose expenses for the review step.

    - No items: one expense for the whole invoice (confidence 0.6)
    - More than 10 items: one grouped expense naming the item count (0.8)
    - Otherwise: one expense per item with a positive total (0.7 each);
      zero-amount items are dropped

    Args:
        items: Invoice line items
        invoice_details: Used for the transaction date (today when missing)
        supplier_name: Used as place and for supplier rules
        total_amount: Invoice total, the amount of whole/grouped expenses
        rules: Supplier rules, tried in order

    Returns:
        List of SuggestedExpense (may be empty if every item is zero)
    """
    transaction_date = (invoice_details.date if invoice_details else "") or date.today().isoformat()
    place = supplier_name or None
    supplier_category = category_from_supplier(supplier_name, rules, supplier_nit)

    if not items:
        description = f"Purchase at {supplier_name}" if supplier_name else "Electronic invoice expense"
        return [
            SuggestedExpense(
                id="invoice-total",
                description=description,
                amount=total_amount,
                transaction_date=transaction_date,
                suggested_category=supplier_category,
                place=place,
                confidence_score=WHOLE_INVOICE_CONFIDENCE,
            )
        ]

    if len(items) > MAX_ITEMIZED_EXPENSES:
        category = _dominant_category(
            (categorize(item, supplier_name, rules, supplier_nit) for item in items),
            supplier_category,
        )
        amount = total_amount or sum(item.total_price for item in items)
        where = f" at {supplier_name}" if supplier_name else ""
        logger.info(f"Grouping {len(items)} items into a single suggested expense ({category})")
        return [
            SuggestedExpense(
                id="invoice-grouped",
                description=f"Purchase{where} ({len(items)} items)",
                amount=amount,
                transaction_date=transaction_date,
                suggested_category=category,
                place=place,
                confidence_score=GROUPED_CONFIDENCE,
            )
        ]

    expenses = []
    for index, item in enumerate(items):
        if item.total_price <= 0:
            continue
        expenses.append(
            SuggestedExpense(
                id=f"item-{index}",
                description=item.description,
                amount=item.total_price,
                transaction_date=transaction_date,
                suggested_category=categorize(item, supplier_name, rules, supplier_nit),
                place=place,
                original_item=item,
                confidence_score=ITEM_CONFIDENCE,
            )
        )
    return expenses
