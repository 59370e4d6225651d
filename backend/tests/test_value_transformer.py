import unittest
from datetime import date
from decimal import Decimal

from ingest_fakes import make_options

from cashflow_ingest.schemas.records import (
    ContractRecord,
    ContractStatus,
    EntityKind,
    ExpenseStatus,
    ReceivableStatus,
)
from cashflow_ingest.services.ingest.cells import EMPTY, DateCell, NumberCell, TextCell
from cashflow_ingest.services.ingest.errors import ValueTransformFailure
from cashflow_ingest.services.ingest.value_transformer import (
    RowValues,
    build_record,
    canonical_field,
    cell_to_value,
    collect_row_values,
    from_serial,
    looks_like_date,
    map_status,
    parse_currency,
    parse_date,
    record_from_json,
)


class ParseCurrencyTests(unittest.TestCase):
    def test_both_conventions_and_plain_digits(self):
        for text in ("R$ 3.500,00", "3,500.00", "3500", "3.500", "R$3500,00"):
            with self.subTest(text=text):
                self.assertEqual(parse_currency(text), Decimal("3500"))

    def test_decimal_separator_alone(self):
        self.assertEqual(parse_currency("12,5"), Decimal("12.5"))
        self.assertEqual(parse_currency("0,500"), Decimal("0.5"))
        self.assertEqual(parse_currency("1.234.567"), Decimal("1234567"))

    def test_negative_forms(self):
        self.assertEqual(parse_currency("-R$ 10,00"), Decimal("-10"))
        self.assertEqual(parse_currency("(1.200,00)"), Decimal("-1200"))

    def test_sign_after_the_currency_marker(self):
        self.assertEqual(parse_currency("R$ -3.500,00"), Decimal("-3500"))
        self.assertEqual(parse_currency("R$ (1.200,00)"), Decimal("-1200"))
        self.assertEqual(parse_currency("R$ 3.500,00-"), Decimal("-3500"))
        self.assertEqual(parse_currency("US$ +12.50"), Decimal("12.5"))

    def test_stray_text_is_not_dropped(self):
        for text in ("12%", "R$ 10,00 aprox", "-"):
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    parse_currency(text)

    def test_blank_is_none_and_garbage_raises(self):
        self.assertIsNone(parse_currency("  "))
        self.assertIsNone(parse_currency(None))
        with self.assertRaises(ValueError):
            parse_currency("a combinar")


class ParseDateTests(unittest.TestCase):
    def test_day_first_is_the_default(self):
        self.assertEqual(parse_date("23/10/2020"), date(2020, 10, 23))
        self.assertEqual(parse_date("05/01/2021"), date(2021, 1, 5))

    def test_month_first_only_when_day_first_is_impossible(self):
        self.assertEqual(parse_date("10/23/2020"), date(2020, 10, 23))

    def test_other_textual_forms(self):
        self.assertEqual(parse_date("2020-10-23"), date(2020, 10, 23))
        self.assertEqual(parse_date("23 de outubro de 2020"), date(2020, 10, 23))
        self.assertEqual(parse_date("23-out-2020"), date(2020, 10, 23))
        self.assertEqual(parse_date("out/2020"), date(2020, 10, 1))
        self.assertEqual(parse_date("05/01/21"), date(2021, 1, 5))
        self.assertEqual(parse_date("5 de Março de 2021"), date(2021, 3, 5))
        self.assertEqual(parse_date("23/10/2020 14:30"), date(2020, 10, 23))

    def test_year_first_keeps_month_in_the_middle(self):
        self.assertEqual(parse_date("2020-10-05"), date(2020, 10, 5))
        self.assertEqual(parse_date("2020/03/04"), date(2020, 3, 4))

    def test_ordinary_text_is_not_a_date(self):
        for text in ("Parcela 12", "sab 21", "3.500", "12/2020", "Obra 2020"):
            with self.subTest(text=text):
                self.assertFalse(looks_like_date(text))
        self.assertTrue(looks_like_date("out/2020"))

    def test_spreadsheet_serial(self):
        self.assertEqual(parse_date("44127"), date(2020, 10, 23))
        self.assertEqual(from_serial(Decimal("44127.5")), date(2020, 10, 23))
        with self.assertRaises(ValueError):
            from_serial(0)

    def test_impossible_dates_raise(self):
        for text in ("31/02/2020", "32/13/2020", "sem data"):
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    parse_date(text)

    def test_serial_can_be_disabled(self):
        with self.assertRaises(ValueError):
            parse_date("44127", allow_serial=False)


class StatusTests(unittest.TestCase):
    def test_words_map_per_kind(self):
        self.assertEqual(map_status("Pago", EntityKind.EXPENSE), ExpenseStatus.PAID)
        self.assertEqual(map_status("Recebido?", EntityKind.RECEIVABLE), ReceivableStatus.RECEIVED)
        self.assertEqual(map_status("Em atraso", EntityKind.RECEIVABLE), ReceivableStatus.OVERDUE)
        self.assertEqual(map_status("Concluído", EntityKind.CONTRACT), ContractStatus.COMPLETED)
        self.assertEqual(map_status("sim", EntityKind.RECEIVABLE), ReceivableStatus.RECEIVED)

    def test_unknown_word_is_left_to_inference(self):
        self.assertIsNone(map_status("talvez", EntityKind.EXPENSE))
        self.assertIsNone(map_status("", EntityKind.EXPENSE))


class FieldMappingTests(unittest.TestCase):
    def test_aliases_and_kind_specific_money_field(self):
        self.assertEqual(canonical_field("client", EntityKind.CONTRACT), "client_name")
        self.assertEqual(canonical_field("amount", EntityKind.CONTRACT), "total_value")
        self.assertEqual(canonical_field("value", EntityKind.RECEIVABLE), "amount")
        self.assertEqual(canonical_field("dueDate", EntityKind.EXPENSE), "due_date")

    def test_ignored_and_foreign_fields(self):
        self.assertIsNone(canonical_field("ignore", EntityKind.EXPENSE))
        self.assertIsNone(canonical_field("vendor", EntityKind.CONTRACT))
        self.assertIsNone(canonical_field(None, EntityKind.CONTRACT))

    def test_cell_values_by_field_type(self):
        self.assertEqual(cell_to_value(NumberCell(Decimal("44127")), "due_date", EntityKind.EXPENSE), date(2020, 10, 23))
        self.assertEqual(cell_to_value(TextCell("R$ 1.200,00"), "amount", EntityKind.EXPENSE), Decimal("1200"))
        self.assertIsNone(cell_to_value(EMPTY, "amount", EntityKind.EXPENSE))
        with self.assertRaises(ValueError):
            cell_to_value(DateCell(date(2020, 1, 1)), "amount", EntityKind.EXPENSE)

    def test_collect_joins_descriptions_and_keeps_first_value(self):
        row = collect_row_values(
            [
                ("description", "Item", TextCell("Aluguel")),
                ("description", "Obs", TextCell("sala 2")),
                ("amount", "Valor", TextCell("R$ 900,00")),
                ("amount", "Valor 2", TextCell("R$ 100,00")),
                ("due_date", "Data", TextCell("amanhã")),
            ],
            EntityKind.EXPENSE,
        )
        self.assertEqual(row.get("description"), "Aluguel - sala 2")
        self.assertEqual(row.get("amount"), Decimal("900"))
        self.assertIsNone(row.get("due_date"))
        self.assertEqual(len(row.warnings), 1)
        self.assertTrue(row.warnings[0].startswith("Data:"))


class BuildRecordTests(unittest.TestCase):
    def test_contract_from_a_sheet_row(self):
        row = RowValues(
            values={
                "client_name": "Ana Lima",
                "project_name": "Residência Lima",
                "total_value": Decimal("3500"),
                "signed_date": date(2020, 10, 23),
            }
        )
        record = build_record(EntityKind.CONTRACT, row, make_options(), row_number=2)
        self.assertIsInstance(record, ContractRecord)
        self.assertEqual(record.total_value, Decimal("3500.00"))
        self.assertEqual(record.signed_date, date(2020, 10, 23))
        self.assertEqual(record.status, ContractStatus.ACTIVE)

    def test_contract_name_falls_back_to_the_other_name(self):
        row = RowValues(values={"project_name": "Casa", "total_value": Decimal("1"), "date": date(2021, 1, 1)})
        record = build_record(EntityKind.CONTRACT, row, make_options())
        self.assertEqual(record.client_name, "Casa")
        self.assertEqual(record.signed_date, date(2021, 1, 1))

    def test_contract_requirements_follow_profession(self):
        row = RowValues(values={"client_name": "Paciente A"})
        with self.assertRaises(ValueTransformFailure) as ctx:
            build_record(EntityKind.CONTRACT, row, make_options(), row_number=7)
        self.assertEqual(ctx.exception.to_issue().row, 7)

        record = build_record(EntityKind.CONTRACT, row, make_options(profession="medicina"))
        self.assertIsNone(record.total_value)

    def test_contract_without_any_name_fails(self):
        with self.assertRaises(ValueTransformFailure):
            build_record(EntityKind.CONTRACT, RowValues(values={"total_value": Decimal("10")}), make_options(profession="medicina"))

    def test_past_receivable_is_inferred_as_received(self):
        row = RowValues(values={"contract_ref": "Loja Centro", "amount": Decimal("500"), "expected_date": date(2021, 6, 1)})
        record = build_record(EntityKind.RECEIVABLE, row, make_options())
        self.assertEqual(record.status, ReceivableStatus.RECEIVED)
        self.assertEqual(record.received_date, date(2021, 6, 1))
        self.assertEqual(record.received_amount, Decimal("500.00"))
        self.assertEqual(record.client_name, "Loja Centro")

    def test_future_receivable_is_pending(self):
        row = RowValues(values={"amount": Decimal("500"), "expected_date": date(2024, 3, 1)})
        record = build_record(EntityKind.RECEIVABLE, row, make_options())
        self.assertEqual(record.status, ReceivableStatus.PENDING)
        self.assertIsNone(record.received_date)
        self.assertEqual(record.client_name, "Cliente não especificado")

    def test_receivable_without_positive_amount_fails(self):
        row = RowValues(values={"amount": Decimal("0"), "expected_date": date(2024, 3, 1)})
        with self.assertRaises(ValueTransformFailure):
            build_record(EntityKind.RECEIVABLE, row, make_options())

    def test_expense_defaults(self):
        row = RowValues(values={"vendor": "Papelaria", "amount": Decimal("80.456"), "due_date": date(2023, 12, 1)})
        record = build_record(EntityKind.EXPENSE, row, make_options())
        self.assertEqual(record.description, "Papelaria")
        self.assertEqual(record.category, "Outros")
        self.assertEqual(record.amount, Decimal("80.46"))
        self.assertEqual(record.status, ExpenseStatus.PAID)
        self.assertEqual(record.paid_date, date(2023, 12, 1))

    def test_explicit_status_wins_over_inference(self):
        row = RowValues(
            values={"description": "Aluguel", "amount": Decimal("900"), "due_date": date(2023, 12, 1), "status": "overdue"}
        )
        record = build_record(EntityKind.EXPENSE, row, make_options())
        self.assertEqual(record.status, ExpenseStatus.OVERDUE)
        self.assertIsNone(record.paid_date)

    def test_failure_message_carries_value_warnings(self):
        row = RowValues(values={"description": "Aluguel"}, warnings=["Valor: Valor monetário inválido: 'x'"])
        with self.assertRaises(ValueTransformFailure) as ctx:
            build_record(EntityKind.EXPENSE, row, make_options())
        self.assertIn("Valor monetário inválido", ctx.exception.message)

    def test_skip_kind_is_rejected(self):
        with self.assertRaises(ValueTransformFailure):
            build_record(EntityKind.SKIP, RowValues(), make_options())


class RecordFromJsonTests(unittest.TestCase):
    def test_loose_json_object(self):
        record = record_from_json(
            {"descricao_extra": "x", "description": "Aluguel", "amount": "R$ 1.200,00", "due_date": "10/02/2024", "paid": True},
            EntityKind.EXPENSE,
            make_options(),
        )
        self.assertEqual(record.amount, Decimal("1200.00"))
        self.assertEqual(record.due_date, date(2024, 2, 10))
        self.assertEqual(record.status, ExpenseStatus.PENDING)

    def test_numbers_and_booleans(self):
        record = record_from_json(
            {"client_name": "Ana", "amount": 350.5, "expected_date": "2021-06-01", "status": True},
            EntityKind.RECEIVABLE,
            make_options(),
        )
        self.assertEqual(record.amount, Decimal("350.50"))
        self.assertEqual(record.status, ReceivableStatus.RECEIVED)

    def test_unreadable_required_value_fails(self):
        with self.assertRaises(ValueTransformFailure):
            record_from_json({"description": "Aluguel", "amount": "a combinar"}, EntityKind.EXPENSE, make_options())
