"""
Tests for item categorization and suggested expense construction.
"""

import pytest

from cufe_backend.schemas.expenses import CategoryMappingRule
from cufe_backend.schemas.invoices import InvoiceDetails, InvoiceItem
from cufe_backend.services.expense_categorizer import (
    DEBT,
    GROCERIES,
    HOUSING,
    OTHER,
    TRANSPORT,
    build_suggested_expenses,
    categorize,
    category_from_description,
    category_from_supplier,
)


def _item(description: str, total: float = 10000.0) -> InvoiceItem:
    return InvoiceItem(description=description, quantity=1, unit_price=total, total_price=total)


class TestCategorize:
    @pytest.mark.parametrize(
        "description,expected",
        [
            ("Gasolina corriente", TRANSPORT),
            ("Peaje Autopista Norte", TRANSPORT),
            ("Frutas y verduras", GROCERIES),
            ("Arriendo apartamento", HOUSING),
            ("Cuota de manejo tarjeta", DEBT),
            ("FINANCIACIÓN", DEBT),
            ("Gas natural domiciliario", HOUSING),
            ("Servicio de gases industriales", HOUSING),
            ("Gaseosa 1.5L", GROCERIES),
            ("Gaseosas surtidas x6", GROCERIES),
        ],
    )
    def test_description_keywords(self, description, expected):
        assert categorize(_item(description)) == expected

    @pytest.mark.parametrize("description", ["Gasa esteril", "Aguacate hass", "Rentabilidad", "Luzmila"])
    def test_keywords_match_whole_words(self, description):
        assert category_from_description(description) is None

    def test_description_beats_supplier(self):
        assert categorize(_item("Gasolina extra"), "Supermercado La 14") == TRANSPORT

    def test_supplier_rule_is_the_fallback(self):
        assert categorize(_item("Ref 4471"), "Supermercado La 14") == GROCERIES

    def test_unmatched_is_other(self):
        assert categorize(_item("Ref 4471"), "ACME SAS") == OTHER
        assert categorize(None) == OTHER


class TestSupplierRules:
    def test_first_matching_rule_wins(self):
        rules = [
            CategoryMappingRule(supplier_pattern="acme", suggested_category=HOUSING, confidence=0.9),
            CategoryMappingRule(supplier_pattern="acme", suggested_category=DEBT, confidence=0.9),
        ]
        assert category_from_supplier("ACME SAS", rules) == HOUSING

    def test_keywords_count_as_supplier_match(self):
        assert category_from_supplier("EMPRESAS PÚBLICAS DE MEDELLÍN") == HOUSING

    def test_nit_pattern(self):
        rules = [
            CategoryMappingRule(
                supplier_pattern="^$never",
                suggested_category=TRANSPORT,
                confidence=0.9,
                nit_pattern=r"^860",
            )
        ]
        assert category_from_supplier("Unknown", rules, supplier_nit="8600123456") == TRANSPORT
        assert category_from_supplier("Unknown", rules, supplier_nit="9000000000") == OTHER

    def test_empty_rules(self):
        assert category_from_supplier("Supermercado", []) == OTHER


class TestBuildSuggestedExpenses:
    def test_one_expense_per_item(self):
        items = [_item("Gasolina", 50000.0), _item("Ref 12", 20000.0)]
        details = InvoiceDetails(number="FE1", date="2024-01-15")

        expenses = build_suggested_expenses(items, details, "Estación Terpel", 70000.0)

        assert [e.id for e in expenses] == ["item-0", "item-1"]
        assert [e.amount for e in expenses] == [50000.0, 20000.0]
        assert expenses[0].suggested_category == TRANSPORT
        assert expenses[0].transaction_date == "2024-01-15"
        assert expenses[0].place == "Estación Terpel"
        assert expenses[0].original_item is not None
        assert all(e.confidence_score == 0.7 for e in expenses)

    def test_zero_amount_items_are_dropped(self):
        items = [_item("Bolsa", 0.0), _item("Arroz", 4500.0)]

        expenses = build_suggested_expenses(items, supplier_name="Tienda")

        assert len(expenses) == 1
        assert expenses[0].description == "Arroz"
        assert expenses[0].id == "item-1"

    def test_no_items_gives_whole_invoice_expense(self):
        expenses = build_suggested_expenses([], supplier_name="ACME SAS", total_amount=119000.0)

        assert len(expenses) == 1
        assert expenses[0].id == "invoice-total"
        assert expenses[0].description == "Purchase at ACME SAS"
        assert expenses[0].amount == 119000.0
        assert expenses[0].confidence_score == 0.6

    def test_no_items_and_no_supplier(self):
        expenses = build_suggested_expenses([], total_amount=5000.0)

        assert expenses[0].description == "Electronic invoice expense"
        assert expenses[0].place is None
        assert expenses[0].suggested_category == OTHER

    def test_many_items_are_grouped(self):
        items = [_item(f"Frutas lote {i}", 1000.0) for i in range(11)]

        expenses = build_suggested_expenses(items, supplier_name="Almacenes Éxito", total_amount=11900.0)

        assert len(expenses) == 1
        grouped = expenses[0]
        assert grouped.id == "invoice-grouped"
        assert grouped.description == "Purchase at Almacenes Éxito (11 items)"
        assert grouped.amount == 11900.0
        assert grouped.suggested_category == GROCERIES
        assert grouped.confidence_score == 0.8

    def test_ten_items_stay_itemized(self):
        items = [_item(f"Ref {i}", 1000.0) for i in range(10)]
        assert len(build_suggested_expenses(items)) == 10

    def test_missing_date_defaults_to_today(self):
        from datetime import date

        expenses = build_suggested_expenses([_item("Arroz")])

        assert expenses[0].transaction_date == date.today().isoformat()
