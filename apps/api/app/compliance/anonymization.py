from __future__ import annotations

import hashlib
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Date, DateTime, MetaData, Time
from sqlalchemy.orm import Session

from app.compliance.models import utcnow
from app.compliance.registry import DEPENDENCY_ORDER, TABLE_MODELS, SubjectRegistry
from app.core.config import get_settings
from app.core.database import Base
from app.crm.repositories import SubjectDataRepository


ANONYMIZED_NAME = "Anonymized User"
ANONYMIZED_NOTE = "Data anonymized per GDPR request"
REDACTED = "[anonymized]"


@dataclass(frozen=True, slots=True)
class ReplacementRule:
    kind: str
    value: Any = None


def null() -> ReplacementRule:
    return ReplacementRule("null")


def constant(value: Any) -> ReplacementRule:
    return ReplacementRule("constant", value)


def derived(template: str) -> ReplacementRule:
    """Template rendered per row; ``{stamp}`` is the run timestamp in ms, ``{token}`` a row-unique hash."""
    return ReplacementRule("derived", template)


RuleSet = Mapping[str, Mapping[str, ReplacementRule]]


def default_rules(email_domain: str | None = None) -> dict[str, dict[str, ReplacementRule]]:
    domain = email_domain or get_settings().compliance_anonymized_email_domain
    synthetic_email = derived("anonymized_{stamp}_{token}@" + domain)
    return {
        "crm_activity": {"subject": constant(REDACTED), "details": null()},
        "crm_task": {"description": null()},
        "crm_communication": {"subject": null(), "content": constant(REDACTED)},
        "crm_lead": {
            "contact_name": constant(ANONYMIZED_NAME),
            "email": synthetic_email,
            "phone": null(),
            "mobile": null(),
            "notes": constant(ANONYMIZED_NOTE),
        },
        "crm_user": {
            "name": constant(ANONYMIZED_NAME),
            "email": synthetic_email,
            "phone": null(),
            "mobile": null(),
        },
        "consent_record": {"email": synthetic_email, "ip_address": null(), "user_agent": null()},
    }


def validate_rules(rules: RuleSet, metadata: MetaData) -> None:
    for table_name, fields in rules.items():
        table = metadata.tables.get(table_name)
        if table is None:
            raise ValueError(f"Unknown table in anonymization rules: {table_name}")
        for field_name, rule in fields.items():
            if rule.kind not in {"null", "constant", "derived"}:
                raise ValueError(f"Unknown rule kind {rule.kind!r} for {table_name}.{field_name}")
            column = table.columns.get(field_name)
            if column is None:
                raise ValueError(f"Unknown column {table_name}.{field_name}")
            if column.primary_key:
                raise ValueError(f"Rule targets primary key {table_name}.{field_name}")
            if column.foreign_keys:
                raise ValueError(f"Rule targets foreign key {table_name}.{field_name}")
            if isinstance(column.type, (DateTime, Date, Time)):
                raise ValueError(f"Rule targets timestamp {table_name}.{field_name}")
            if rule.kind == "null" and not column.nullable:
                raise ValueError(f"Rule nulls non-nullable column {table_name}.{field_name}")


class AnonymizationEngine:
    def __init__(
        self,
        rules: RuleSet | None = None,
        *,
        registry: SubjectRegistry | None = None,
        subject_data: SubjectDataRepository | None = None,
        metadata: MetaData | None = None,
    ) -> None:
        self.rules: RuleSet = rules if rules is not None else default_rules()
        validate_rules(self.rules, metadata if metadata is not None else Base.metadata)
        self.registry = registry or SubjectRegistry()
        self.subject_data = subject_data or SubjectDataRepository()

    def anonymize(
        self,
        session: Session,
        subject_email: str,
        record_ids: Mapping[str, list[uuid.UUID]] | None = None,
    ) -> dict[str, int]:
        """Rewrite identifying fields of the subject's rows in place; flushes, never commits."""
        if record_ids is None:
            record_ids = self.registry.related_record_ids(session, subject_email)
        stamp = str(int(utcnow().timestamp() * 1000))

        touched: dict[str, int] = {}
        for table_name in DEPENDENCY_ORDER:
            fields = self.rules.get(table_name)
            if not fields:
                continue
            rows = self.subject_data.rows_by_ids(session, TABLE_MODELS[table_name], record_ids.get(table_name, []))
            for row in rows:
                for field_name, rule in fields.items():
                    setattr(row, field_name, self._render(rule, stamp, table_name, row.id))
            touched[table_name] = len(rows)
        session.flush()
        return touched

    @staticmethod
    def _render(rule: ReplacementRule, stamp: str, table_name: str, row_id: uuid.UUID) -> Any:
        if rule.kind == "null":
            return None
        if rule.kind == "constant":
            return rule.value
        token = hashlib.sha256(f"{stamp}:{table_name}:{row_id}".encode("utf-8")).hexdigest()[:12]
        return str(rule.value).format(stamp=stamp, token=token)
