from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .authn import MANAGER_ROLES, AuthContext, get_auth_context, require_manager
from .db import get_db
from .models import CarePlan, CaseNote, FormSubmission, FormTemplate
from .records import (
    care_plan_sections,
    create_care_plan,
    create_case_note,
    create_form_template,
    create_medication_record,
    form_fields,
    get_care_plan,
    get_case_note,
    list_care_plans,
    list_case_notes,
    list_form_submissions,
    list_form_templates,
    list_medication_records,
    note_tags,
    submission_answers,
    submit_form,
    update_care_plan,
    update_case_note,
)
from .schemas import (
    CarePlanCreate,
    CarePlanOut,
    CarePlanUpdate,
    CaseNoteCreate,
    CaseNoteOut,
    CaseNoteUpdate,
    FormSubmissionCreate,
    FormSubmissionOut,
    FormTemplateCreate,
    FormTemplateOut,
    MedicationRecordCreate,
    MedicationRecordOut,
)

router = APIRouter(prefix="/api")


def _to_case_note_out(note: CaseNote) -> CaseNoteOut:
    return CaseNoteOut(
        id=note.id,
        client_id=note.client_id,
        author_user_id=note.author_user_id,
        linked_shift_id=note.linked_shift_id,
        title=note.title,
        content=note.content,
        category=note.category,
        priority=note.priority,
        tags=note_tags(note),
        is_archived=bool(note.is_archived),
        created_at=note.created_at,
        updated_at=note.updated_at,
    )


def _to_care_plan_out(plan: CarePlan) -> CarePlanOut:
    return CarePlanOut(
        id=plan.id,
        client_id=plan.client_id,
        created_by_user_id=plan.created_by_user_id,
        title=plan.title,
        status=plan.status,
        sections=care_plan_sections(plan),
        updated_at=plan.updated_at,
    )


def _to_template_out(template: FormTemplate) -> FormTemplateOut:
    return FormTemplateOut(
        id=template.id,
        name=template.name,
        category=template.category,
        fields=form_fields(template),
        is_active=bool(template.is_active),
    )


def _to_submission_out(row: FormSubmission) -> FormSubmissionOut:
    return FormSubmissionOut(
        id=row.id,
        template_id=row.template_id,
        client_id=row.client_id,
        submitted_by_user_id=row.submitted_by_user_id,
        answers=submission_answers(row),
        created_at=row.created_at,
    )


@router.get("/case-notes", response_model=List[CaseNoteOut])
def get_case_notes(
    client_id: Optional[int] = Query(default=None),
    category: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None, max_length=120),
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    rows = list_case_notes(
        db,
        ctx.tenant_id,
        client_id=client_id,
        category=category,
        search=q,
        include_archived=include_archived,
    )
    return [_to_case_note_out(n) for n in rows]


@router.post("/case-notes", response_model=CaseNoteOut, status_code=status.HTTP_201_CREATED)
def add_case_note(
    payload: CaseNoteCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        note = create_case_note(db, ctx.tenant_id, ctx.user_id, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not note:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return _to_case_note_out(note)


@router.get("/case-notes/{note_id}", response_model=CaseNoteOut)
def get_case_note_detail(
    note_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    note = get_case_note(db, ctx.tenant_id, note_id)
    if not note:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Case note not found")
    return _to_case_note_out(note)


@router.patch("/case-notes/{note_id}", response_model=CaseNoteOut)
def patch_case_note(
    note_id: int,
    payload: CaseNoteUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    existing = get_case_note(db, ctx.tenant_id, note_id)
    if existing and existing.author_user_id != ctx.user_id and not ctx.has_role(*MANAGER_ROLES):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the author or a manager can edit this note")
    try:
        note = update_case_note(db, ctx.tenant_id, note_id, payload.model_dump(exclude_unset=True), actor_id=ctx.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not note:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Case note not found")
    return _to_case_note_out(note)


@router.get("/medication-records", response_model=List[MedicationRecordOut])
def get_medication_records(
    client_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return list_medication_records(db, ctx.tenant_id, client_id=client_id, status=status_filter)


@router.post("/medication-records", response_model=MedicationRecordOut, status_code=status.HTTP_201_CREATED)
def add_medication_record(
    payload: MedicationRecordCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        row = create_medication_record(db, ctx.tenant_id, ctx.user_id, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return row


@router.get("/care-plans", response_model=List[CarePlanOut])
def get_care_plans(
    client_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return [_to_care_plan_out(p) for p in list_care_plans(db, ctx.tenant_id, client_id=client_id)]


@router.post("/care-plans", response_model=CarePlanOut, status_code=status.HTTP_201_CREATED)
def add_care_plan(
    payload: CarePlanCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        plan = create_care_plan(db, ctx.tenant_id, ctx.user_id, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not plan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return _to_care_plan_out(plan)


@router.get("/care-plans/{plan_id}", response_model=CarePlanOut)
def get_care_plan_detail(
    plan_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    plan = get_care_plan(db, ctx.tenant_id, plan_id)
    if not plan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Care plan not found")
    return _to_care_plan_out(plan)


@router.patch("/care-plans/{plan_id}", response_model=CarePlanOut)
def patch_care_plan(
    plan_id: int,
    payload: CarePlanUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        plan = update_care_plan(db, ctx.tenant_id, plan_id, payload.model_dump(exclude_unset=True), actor_id=ctx.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not plan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Care plan not found")
    return _to_care_plan_out(plan)


@router.get("/forms", response_model=List[FormTemplateOut])
def get_form_templates(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return [_to_template_out(t) for t in list_form_templates(db, ctx.tenant_id, include_inactive=include_inactive)]


@router.post("/forms", response_model=FormTemplateOut, status_code=status.HTTP_201_CREATED)
def add_form_template(
    payload: FormTemplateCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        template = create_form_template(
            db,
            ctx.tenant_id,
            name=payload.name,
            fields=[f.model_dump() for f in payload.fields],
            category=payload.category,
            actor_id=ctx.user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_template_out(template)


@router.post("/forms/{template_id}/submissions", response_model=FormSubmissionOut, status_code=status.HTTP_201_CREATED)
def add_form_submission(
    template_id: int,
    payload: FormSubmissionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        row = submit_form(
            db,
            ctx.tenant_id,
            template_id,
            payload.answers,
            client_id=payload.client_id,
            user_id=ctx.user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Form not found")
    return _to_submission_out(row)


@router.get("/forms/{template_id}/submissions", response_model=List[FormSubmissionOut])
def get_form_submissions(
    template_id: int,
    client_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    rows = list_form_submissions(db, ctx.tenant_id, template_id=template_id, client_id=client_id)
    return [_to_submission_out(r) for r in rows]
