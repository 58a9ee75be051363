import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from tradiedesk.core.api_docs import error_responses
from tradiedesk.core.config import settings
from tradiedesk.core.deps import get_current_user, get_db
from tradiedesk.core.id_utils import generate_shortuuid
from tradiedesk.core.observability import log_automation_event
from tradiedesk.models.automation import Automation, AutomationLog
from tradiedesk.models.user import User
from tradiedesk.schemas.automation import (
    AutomationCreateIn,
    AutomationDeleteOut,
    AutomationListOut,
    AutomationLogListOut,
    AutomationLogOut,
    AutomationOut,
    AutomationScanOut,
    AutomationTemplate,
    AutomationTemplateCatalogOut,
    AutomationTemplateCategory,
    AutomationTemplateInstallIn,
    AutomationTemplateInstallOut,
    AutomationUpdateIn,
)
from tradiedesk.schemas.common import PaginationMeta
from tradiedesk.services.automation_service import (
    parse_actions,
    parse_trigger,
    process_time_based_automations,
)
from tradiedesk.services.automation_storage import SqlAutomationStorage
from tradiedesk.services.automation_templates import (
    get_all_templates,
    get_popular_templates,
    get_template_by_id,
    get_templates_by_category,
    template_to_automation,
)

router = APIRouter(prefix="/automations", tags=["automation"])


def _automation_or_404(db: Session, *, user_id: str, automation_id: str) -> Automation:
    automation = db.execute(
        select(Automation).where(
            Automation.id == automation_id,
            Automation.user_id == user_id,
        )
    ).scalar_one_or_none()
    if not automation:
        raise HTTPException(status_code=404, detail="Automation not found")
    return automation


def _template_or_404(template_id: str) -> AutomationTemplate:
    template = get_template_by_id(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Automation template not found")
    return template


def _automation_out(automation: Automation) -> AutomationOut:
    out = _automation_out_or_none(automation)
    if out is None:
        raise HTTPException(status_code=500, detail="Automation has an invalid trigger")
    return out


def _automation_out_or_none(automation: Automation) -> AutomationOut | None:
    trigger = parse_trigger(automation.trigger_json)
    if trigger is None:
        # Rows written outside the API can hold a trigger the engine ignores.
        log_automation_event(
            "automation.trigger.invalid",
            level=logging.WARNING,
            automation_id=automation.id,
            user_id=automation.user_id,
        )
        return None
    return AutomationOut(
        id=automation.id,
        user_id=automation.user_id,
        name=automation.name,
        description=automation.description,
        is_active=automation.is_active,
        template_id=automation.template_id,
        trigger=trigger,
        actions=parse_actions(automation.actions_json),
        created_at=automation.created_at,
        updated_at=automation.updated_at,
    )


@router.get(
    "/templates",
    response_model=AutomationTemplateCatalogOut,
    summary="List automation templates",
    responses=error_responses(401, 422, 500),
)
def list_templates(
    category: AutomationTemplateCategory | None = Query(default=None),
    popular: bool = Query(default=False),
    _: User = Depends(get_current_user),
):
    if popular:
        items = get_popular_templates()
        if category:
            items = [item for item in items if item.category == category]
    elif category:
        items = get_templates_by_category(category)
    else:
        items = get_all_templates()
    return AutomationTemplateCatalogOut(items=items, category=category)


@router.get(
    "/templates/{template_id}",
    response_model=AutomationTemplate,
    summary="Get automation template",
    responses=error_responses(401, 404, 500),
)
def get_template(
    template_id: str,
    _: User = Depends(get_current_user),
):
    return _template_or_404(template_id)


@router.post(
    "/templates/{template_id}/install",
    response_model=AutomationTemplateInstallOut,
    summary="Install automation template for the current user",
    responses=error_responses(401, 404, 422, 500),
)
def install_template(
    template_id: str,
    payload: AutomationTemplateInstallIn | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    payload = payload or AutomationTemplateInstallIn()
    template = _template_or_404(template_id)
    values = template_to_automation(template, current_user.id)
    automation = Automation(
        id=generate_shortuuid(),
        user_id=values["user_id"],
        name=(payload.name or values["name"]).strip(),
        description=values["description"],
        is_active=payload.activate,
        template_id=values["template_id"],
        trigger_json=values["trigger"],
        actions_json=values["actions"],
    )
    db.add(automation)
    db.commit()
    db.refresh(automation)
    log_automation_event(
        "automation.template.installed",
        user_id=current_user.id,
        automation_id=automation.id,
        template_id=template.id,
    )
    return AutomationTemplateInstallOut(template=template, automation=_automation_out(automation))


@router.get(
    "/logs",
    response_model=AutomationLogListOut,
    summary="List recent automation processing markers",
    responses=error_responses(401, 422, 500),
)
def list_logs(
    limit: int = Query(default=settings.automation_log_default_limit, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = SqlAutomationStorage(db).get_automation_logs(current_user.id, limit=limit)
    return AutomationLogListOut(
        items=[
            AutomationLogOut(
                id=row.id,
                automation_id=row.automation_id,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                result=row.result,
                error_message=row.error_message,
                processed_at=row.processed_at,
            )
            for row in rows
        ],
        limit=limit,
    )


@router.post(
    "/process",
    response_model=AutomationScanOut,
    summary="Run the time-based automation scan for the current user",
    responses=error_responses(401, 500),
)
def run_scan(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    summary = process_time_based_automations(SqlAutomationStorage(db), user_ids=[current_user.id])
    db.commit()
    return AutomationScanOut(processed=summary.processed, errors=summary.errors)


@router.get(
    "",
    response_model=AutomationListOut,
    summary="List automations",
    responses=error_responses(401, 422, 500),
)
def list_automations(
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    count_stmt = select(func.count(Automation.id)).where(Automation.user_id == current_user.id)
    stmt = select(Automation).where(Automation.user_id == current_user.id)
    if is_active is not None:
        count_stmt = count_stmt.where(Automation.is_active.is_(is_active))
        stmt = stmt.where(Automation.is_active.is_(is_active))

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Automation.created_at.desc(), Automation.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [item for item in map(_automation_out_or_none, rows) if item is not None]
    count = len(items)
    return AutomationListOut(
        items=items,
        pagination=PaginationMeta.build(total=total, limit=limit, offset=offset, count=count),
        is_active=is_active,
    )


@router.post(
    "",
    response_model=AutomationOut,
    status_code=201,
    summary="Create automation",
    responses=error_responses(401, 422, 500),
)
def create_automation(
    payload: AutomationCreateIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    automation = Automation(
        id=generate_shortuuid(),
        user_id=current_user.id,
        name=payload.name.strip(),
        description=payload.description,
        is_active=payload.is_active,
        template_id=payload.template_id,
        trigger_json=payload.trigger.to_storage(),
        actions_json=[item.to_storage() for item in payload.actions],
    )
    db.add(automation)
    db.commit()
    db.refresh(automation)
    log_automation_event(
        "automation.created",
        user_id=current_user.id,
        automation_id=automation.id,
        trigger_type=payload.trigger.type,
    )
    return _automation_out(automation)


@router.get(
    "/{automation_id}",
    response_model=AutomationOut,
    summary="Get automation",
    responses=error_responses(401, 404, 500),
)
def get_automation(
    automation_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _automation_out(_automation_or_404(db, user_id=current_user.id, automation_id=automation_id))


@router.patch(
    "/{automation_id}",
    response_model=AutomationOut,
    summary="Update automation",
    responses=error_responses(401, 404, 422, 500),
)
def update_automation(
    automation_id: str,
    payload: AutomationUpdateIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    automation = _automation_or_404(db, user_id=current_user.id, automation_id=automation_id)
    if payload.name is not None:
        automation.name = payload.name.strip()
    if payload.description is not None:
        automation.description = payload.description
    if payload.is_active is not None:
        automation.is_active = payload.is_active
    if payload.trigger is not None:
        automation.trigger_json = payload.trigger.to_storage()
    if payload.actions is not None:
        automation.actions_json = [item.to_storage() for item in payload.actions]

    db.commit()
    db.refresh(automation)
    log_automation_event("automation.updated", user_id=current_user.id, automation_id=automation.id)
    return _automation_out(automation)


@router.delete(
    "/{automation_id}",
    response_model=AutomationDeleteOut,
    summary="Delete automation and its processing markers",
    responses=error_responses(401, 404, 500),
)
def delete_automation(
    automation_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    automation = _automation_or_404(db, user_id=current_user.id, automation_id=automation_id)
    db.execute(delete(AutomationLog).where(AutomationLog.automation_id == automation.id))
    db.delete(automation)
    db.commit()
    log_automation_event("automation.deleted", user_id=current_user.id, automation_id=automation_id)
    return AutomationDeleteOut(id=automation_id, deleted=True)
