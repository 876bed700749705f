import json
from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .models import CarePlan, CaseNote, FormSubmission, FormTemplate, MedicationRecord
from .services import get_client, get_shift, log_activity

CASE_NOTE_CATEGORIES = {
    "Progress Note",
    "Incident Report",
    "Medication Administration",
    "Observation",
    "Assessment",
    "Care Plan Update",
}
CASE_NOTE_PRIORITIES = {"low", "normal", "high", "urgent"}
MEDICATION_STATUSES = {"administered", "refused", "missed"}
CARE_PLAN_STATUSES = {"draft", "active", "archived"}
CARE_PLAN_SECTIONS = (
    "about_me",
    "goals",
    "adl",
    "communication",
    "behaviour",
    "mealtime",
    "disaster",
)
FORM_FIELD_TYPES = {"text", "textarea", "number", "date", "checkbox", "select"}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _dump(payload) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def _load(raw: str | None, fallback):
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except ValueError:
        return fallback


def note_tags(note: CaseNote) -> list[str]:
    return list(_load(note.tags_json, []))


def care_plan_sections(plan: CarePlan) -> dict:
    return dict(_load(plan.sections_json, {}))


def form_fields(template: FormTemplate) -> list[dict]:
    return list(_load(template.fields_json, []))


def submission_answers(submission: FormSubmission) -> dict:
    return dict(_load(submission.answers_json, {}))


def _normalize_tags(tags: list[str] | None) -> list[str]:
    seen: list[str] = []
    for tag in tags or []:
        value = str(tag).strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


# Case notes


def get_case_note(db: Session, tenant_id: int, note_id: int) -> CaseNote | None:
    return db.execute(
        select(CaseNote).where(CaseNote.id == note_id, CaseNote.tenant_id == tenant_id)
    ).scalar_one_or_none()


def list_case_notes(
    db: Session,
    tenant_id: int,
    client_id: int | None = None,
    category: str | None = None,
    search: str | None = None,
    include_archived: bool = False,
) -> list[CaseNote]:
    q = select(CaseNote).where(CaseNote.tenant_id == tenant_id)
    if client_id is not None:
        q = q.where(CaseNote.client_id == client_id)
    if category:
        q = q.where(CaseNote.category == category)
    if not include_archived:
        q = q.where(CaseNote.is_archived.is_(False))
    if search:
        like = f"%{search.strip()}%"
        q = q.where(or_(CaseNote.title.ilike(like), CaseNote.content.ilike(like)))
    return list(db.execute(q.order_by(CaseNote.created_at.desc(), CaseNote.id.desc())).scalars().all())


def _validate_note_fields(db: Session, tenant_id: int, data: dict) -> None:
    if data.get("category") is not None and data["category"] not in CASE_NOTE_CATEGORIES:
        raise ValueError("Invalid case note category")
    if data.get("priority") is not None and data["priority"] not in CASE_NOTE_PRIORITIES:
        raise ValueError("Invalid case note priority")
    if data.get("linked_shift_id") is not None and not get_shift(db, tenant_id, data["linked_shift_id"]):
        raise ValueError("Linked shift not found")


def create_case_note(
    db: Session, tenant_id: int, author_id: int | None, data: dict
) -> CaseNote | None:
    if not get_client(db, tenant_id, data["client_id"]):
        return None
    _validate_note_fields(db, tenant_id, data)
    note = CaseNote(
        tenant_id=tenant_id,
        client_id=data["client_id"],
        author_user_id=author_id,
        linked_shift_id=data.get("linked_shift_id"),
        title=data["title"].strip(),
        content=data["content"],
        category=data.get("category") or "Progress Note",
        priority=data.get("priority") or "normal",
        tags_json=_dump(_normalize_tags(data.get("tags"))),
    )
    db.add(note)
    db.flush()
    log_activity(db, tenant_id, "case_note_created", "case_note", note.id, author_id, note.title)
    db.commit()
    db.refresh(note)
    return note


def update_case_note(
    db: Session, tenant_id: int, note_id: int, changes: dict, actor_id: int | None = None
) -> CaseNote | None:
    note = get_case_note(db, tenant_id, note_id)
    if not note:
        return None
    _validate_note_fields(db, tenant_id, changes)
    for field in ("title", "content", "category", "priority", "linked_shift_id", "is_archived"):
        if field in changes and changes[field] is not None:
            setattr(note, field, changes[field])
    if changes.get("tags") is not None:
        note.tags_json = _dump(_normalize_tags(changes["tags"]))
    note.updated_at = utc_now_naive()
    log_activity(db, tenant_id, "case_note_updated", "case_note", note.id, actor_id, ", ".join(sorted(changes)))
    db.commit()
    db.refresh(note)
    return note


# Medication records


def list_medication_records(
    db: Session, tenant_id: int, client_id: int | None = None, status: str | None = None
) -> list[MedicationRecord]:
    q = select(MedicationRecord).where(MedicationRecord.tenant_id == tenant_id)
    if client_id is not None:
        q = q.where(MedicationRecord.client_id == client_id)
    if status:
        q = q.where(MedicationRecord.status == status)
    return list(db.execute(q.order_by(MedicationRecord.administered_at.desc())).scalars().all())


def create_medication_record(
    db: Session, tenant_id: int, user_id: int | None, data: dict
) -> MedicationRecord | None:
    if not get_client(db, tenant_id, data["client_id"]):
        return None
    status = data.get("status") or "administered"
    if status not in MEDICATION_STATUSES:
        raise ValueError("Invalid medication status")
    if status != "administered" and not (data.get("notes") or "").strip():
        raise ValueError("A note is required when medication is refused or missed")
    row = MedicationRecord(
        tenant_id=tenant_id,
        client_id=data["client_id"],
        administered_by_user_id=user_id,
        medication_name=data["medication_name"].strip(),
        dosage=data["dosage"].strip(),
        route=data.get("route") or "oral",
        status=status,
        administered_at=data.get("administered_at") or utc_now_naive(),
        notes=(data.get("notes") or "").strip() or None,
    )
    db.add(row)
    db.flush()
    log_activity(db, tenant_id, "medication_recorded", "medication_record", row.id, user_id, f"{row.medication_name} {row.status}")
    db.commit()
    db.refresh(row)
    return row


# Care plans


def get_care_plan(db: Session, tenant_id: int, plan_id: int) -> CarePlan | None:
    return db.execute(
        select(CarePlan).where(CarePlan.id == plan_id, CarePlan.tenant_id == tenant_id)
    ).scalar_one_or_none()


def list_care_plans(db: Session, tenant_id: int, client_id: int | None = None) -> list[CarePlan]:
    q = select(CarePlan).where(CarePlan.tenant_id == tenant_id)
    if client_id is not None:
        q = q.where(CarePlan.client_id == client_id)
    return list(db.execute(q.order_by(CarePlan.updated_at.desc())).scalars().all())


def _merge_sections(current: dict, incoming: dict | None) -> dict:
    merged = dict(current)
    for key, value in (incoming or {}).items():
        if key not in CARE_PLAN_SECTIONS:
            raise ValueError(f"Unknown care plan section: {key}")
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def create_care_plan(db: Session, tenant_id: int, user_id: int | None, data: dict) -> CarePlan | None:
    if not get_client(db, tenant_id, data["client_id"]):
        return None
    status = data.get("status") or "draft"
    if status not in CARE_PLAN_STATUSES:
        raise ValueError("Invalid care plan status")
    plan = CarePlan(
        tenant_id=tenant_id,
        client_id=data["client_id"],
        created_by_user_id=user_id,
        title=data["title"].strip(),
        status=status,
        sections_json=_dump(_merge_sections({}, data.get("sections"))),
    )
    db.add(plan)
    db.flush()
    log_activity(db, tenant_id, "care_plan_created", "care_plan", plan.id, user_id, plan.title)
    db.commit()
    db.refresh(plan)
    return plan


def update_care_plan(
    db: Session, tenant_id: int, plan_id: int, changes: dict, actor_id: int | None = None
) -> CarePlan | None:
    """Partial update; ``sections`` is merged section by section so an
    auto-save can send a single section."""
    plan = get_care_plan(db, tenant_id, plan_id)
    if not plan:
        return None
    if changes.get("status") is not None:
        if changes["status"] not in CARE_PLAN_STATUSES:
            raise ValueError("Invalid care plan status")
        plan.status = changes["status"]
    if changes.get("title"):
        plan.title = changes["title"].strip()
    if changes.get("sections") is not None:
        plan.sections_json = _dump(_merge_sections(care_plan_sections(plan), changes["sections"]))
    plan.updated_at = utc_now_naive()
    log_activity(db, tenant_id, "care_plan_updated", "care_plan", plan.id, actor_id, ", ".join(sorted(changes)))
    db.commit()
    db.refresh(plan)
    return plan


# Compliance forms


def list_form_templates(db: Session, tenant_id: int, include_inactive: bool = False) -> list[FormTemplate]:
    q = select(FormTemplate).where(FormTemplate.tenant_id == tenant_id)
    if not include_inactive:
        q = q.where(FormTemplate.is_active.is_(True))
    return list(db.execute(q.order_by(FormTemplate.name.asc())).scalars().all())


def get_form_template(db: Session, tenant_id: int, template_id: int) -> FormTemplate | None:
    return db.execute(
        select(FormTemplate).where(FormTemplate.id == template_id, FormTemplate.tenant_id == tenant_id)
    ).scalar_one_or_none()


def create_form_template(
    db: Session, tenant_id: int, name: str, fields: list[dict], category: str | None = None,
    actor_id: int | None = None,
) -> FormTemplate:
    keys = set()
    for field in fields:
        if field.get("type") not in FORM_FIELD_TYPES:
            raise ValueError(f"Invalid field type: {field.get('type')}")
        if field["key"] in keys:
            raise ValueError(f"Duplicate field key: {field['key']}")
        keys.add(field["key"])
    row = FormTemplate(
        tenant_id=tenant_id,
        name=name.strip(),
        category=(category or "").strip() or None,
        fields_json=_dump(fields),
        is_active=True,
    )
    db.add(row)
    db.flush()
    log_activity(db, tenant_id, "form_template_created", "form_template", row.id, actor_id, row.name)
    db.commit()
    db.refresh(row)
    return row


def submit_form(
    db: Session,
    tenant_id: int,
    template_id: int,
    answers: dict,
    client_id: int | None = None,
    user_id: int | None = None,
) -> FormSubmission | None:
    template = get_form_template(db, tenant_id, template_id)
    if not template or not template.is_active:
        return None
    if client_id is not None and not get_client(db, tenant_id, client_id):
        raise ValueError("Client not found")
    missing = [
        field["key"]
        for field in form_fields(template)
        if field.get("required") and answers.get(field["key"]) in (None, "")
    ]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    row = FormSubmission(
        tenant_id=tenant_id,
        template_id=template.id,
        client_id=client_id,
        submitted_by_user_id=user_id,
        answers_json=_dump(answers),
    )
    db.add(row)
    db.flush()
    log_activity(db, tenant_id, "form_submitted", "form_submission", row.id, user_id, template.name)
    db.commit()
    db.refresh(row)
    return row


def list_form_submissions(
    db: Session, tenant_id: int, template_id: int | None = None, client_id: int | None = None
) -> list[FormSubmission]:
    q = select(FormSubmission).where(FormSubmission.tenant_id == tenant_id)
    if template_id is not None:
        q = q.where(FormSubmission.template_id == template_id)
    if client_id is not None:
        q = q.where(FormSubmission.client_id == client_id)
    return list(db.execute(q.order_by(FormSubmission.created_at.desc())).scalars().all())
