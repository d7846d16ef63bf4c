from __future__ import annotations

import unittest
from datetime import datetime, timezone

from app.errors import SetupError, TemplateNotFound
from app.models import NotificationTemplate
from app.services.templates import (
    MessageSource,
    RenderedMessage,
    default_variables,
    format_whatsapp_text,
    get_template_by_slug,
    load_message_source,
    placeholders_in,
    resolve_message,
    substitute,
)


class _FakeTemplateDB:
    def __init__(self, template: NotificationTemplate | None):
        self._template = template
        self.lookups = 0

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        self.lookups += 1
        return self._template


def _template(**overrides) -> NotificationTemplate:  # type: ignore[no-untyped-def]
    values = {
        "id": 1,
        "slug": "admin_new_leave_application",
        "subject": "New leave from {{employee_name}}",
        "body": "{{employee_name}} requested {{ days }} days ({{leave_type}}).",
        "variables": ["employee_name", "days", "leave_type"],
        "is_active": True,
    }
    values.update(overrides)
    return NotificationTemplate(**values)


class SubstituteTests(unittest.TestCase):
    def test_every_occurrence_is_replaced(self) -> None:
        text = "{{name}} / {{ name }} / {{name  }}"
        self.assertEqual(substitute(text, {"name": "Ayse"}), "Ayse / Ayse / Ayse")

    def test_missing_variable_becomes_empty(self) -> None:
        self.assertEqual(substitute("Hello {{name}}, see {{link}}.", {"name": "Ali"}), "Hello Ali, see .")

    def test_non_string_values_are_stringified(self) -> None:
        self.assertEqual(substitute("{{days}} days", {"days": 3}), "3 days")

    def test_unmatched_braces_are_left_alone(self) -> None:
        self.assertEqual(substitute("{name} {{ }}", {"name": "x"}), "{name} {{ }}")

    def test_placeholders_with_inner_spaces_are_replaced(self) -> None:
        self.assertEqual(substitute("Dear {{ employee name }}!", {"employee name": "Ayse"}), "Dear Ayse!")
        self.assertEqual(substitute("Dear {{employee name}}!", {}), "Dear !")

    def test_placeholders_are_listed(self) -> None:
        self.assertEqual(placeholders_in("{{a}} {{ b.c }} {{a}}"), {"a", "b.c"})


class MessageSourceTests(unittest.TestCase):
    def test_render_is_idempotent(self) -> None:
        source = MessageSource(subject="Hi {{name}}", body="{{name}} {{name}}")
        first = source.render({"name": "Zeynep"})
        second = source.render({"name": "Zeynep"})

        self.assertEqual(first, second)
        self.assertEqual(source.subject, "Hi {{name}}")

    def test_default_variables_are_available_and_overridable(self) -> None:
        source = MessageSource(subject="{{company_name}}", body="{{year}}")
        defaults = default_variables(datetime(2026, 1, 2, tzinfo=timezone.utc))

        rendered = source.render({"company_name": "Acme"})

        self.assertEqual(rendered.subject, "Acme")
        self.assertEqual(len(rendered.body), 4)
        self.assertEqual(defaults["year"], "2026")
        self.assertEqual(defaults["date"], "2026-01-02")


class TemplateLookupTests(unittest.TestCase):
    def test_slug_resolves_and_renders(self) -> None:
        db = _FakeTemplateDB(_template())

        message = resolve_message(
            db,  # type: ignore[arg-type]
            template_slug="admin_new_leave_application",
            variables={"employee_name": "Mehmet", "days": 2, "leave_type": "Annual"},
        )

        self.assertEqual(message.subject, "New leave from Mehmet")
        self.assertEqual(message.body, "Mehmet requested 2 days (Annual).")
        self.assertEqual(message.template_slug, "admin_new_leave_application")

    def test_undeclared_placeholders_are_logged(self) -> None:
        db = _FakeTemplateDB(_template(body="{{employee_name}} owes {{amount}}", variables=["employee_name"]))

        with self.assertLogs("app.templates", level="WARNING") as captured:
            load_message_source(db, template_slug="admin_new_leave_application")  # type: ignore[arg-type]

        self.assertTrue(any("template_placeholders_undeclared" in line for line in captured.output))

    def test_unknown_slug_raises_template_not_found(self) -> None:
        db = _FakeTemplateDB(None)

        with self.assertRaises(TemplateNotFound) as ctx:
            get_template_by_slug(db, "nope")  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "TEMPLATE_NOT_FOUND")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_inactive_template_is_not_found(self) -> None:
        db = _FakeTemplateDB(_template(is_active=False))

        with self.assertRaises(TemplateNotFound):
            load_message_source(db, template_slug="admin_new_leave_application")  # type: ignore[arg-type]

    def test_blank_slug_is_a_setup_error(self) -> None:
        with self.assertRaises(SetupError) as ctx:
            get_template_by_slug(_FakeTemplateDB(None), "   ")  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "MISSING_TEMPLATE_SLUG")

    def test_raw_content_needs_subject_and_body(self) -> None:
        db = _FakeTemplateDB(None)

        with self.assertRaises(SetupError) as ctx:
            load_message_source(db, subject="Only a subject")  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "MISSING_MESSAGE_CONTENT")
        self.assertEqual(db.lookups, 0)

    def test_raw_content_skips_template_lookup(self) -> None:
        db = _FakeTemplateDB(None)

        source = load_message_source(db, subject="Hello", body="Body {{x}}")  # type: ignore[arg-type]

        self.assertIsNone(source.template_slug)
        self.assertEqual(source.render({"x": 1}).body, "Body 1")
        self.assertEqual(db.lookups, 0)


class WhatsAppFormattingTests(unittest.TestCase):
    def test_subject_is_framed_above_separator(self) -> None:
        text = format_whatsapp_text(RenderedMessage(subject="Leave approved", body="Enjoy."))
        lines = text.split("\n")

        self.assertEqual(lines[0], "*// Leave approved //*")
        self.assertEqual(lines[1], "-" * 40)
        self.assertEqual(lines[2], "Enjoy.")

    def test_body_only_message_is_sent_as_is(self) -> None:
        self.assertEqual(format_whatsapp_text(RenderedMessage(subject="", body="Plain")), "Plain")


if __name__ == "__main__":
    unittest.main()
