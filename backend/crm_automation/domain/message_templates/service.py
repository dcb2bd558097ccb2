from __future__ import annotations

import re
import uuid

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.leads.db_models import Lead
from crm_automation.domain.message_templates.db_models import MessageTemplate

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")


async def list_templates(session: AsyncSession, *, company_id: uuid.UUID) -> list[MessageTemplate]:
    return list(
        (
            await session.execute(
                sa.select(MessageTemplate)
                .where(MessageTemplate.company_id == company_id)
                .order_by(MessageTemplate.name.asc())
            )
        )
        .scalars()
        .all()
    )


async def get_template(
    session: AsyncSession, *, company_id: uuid.UUID, template_id: int
) -> MessageTemplate | None:
    return await session.scalar(
        sa.select(MessageTemplate).where(
            MessageTemplate.company_id == company_id, MessageTemplate.template_id == template_id
        )
    )


async def create_template(
    session: AsyncSession, *, company_id: uuid.UUID, name: str, body: str
) -> MessageTemplate:
    template = MessageTemplate(company_id=company_id, name=name, body=body)
    session.add(template)
    await session.flush()
    return template


def lead_variables(lead: Lead) -> dict[str, str]:
    name = (lead.name or "").strip()
    return {
        "name": name,
        "first_name": name.split(" ")[0] if name else "",
        "status": lead.status or "",
        "phone": lead.phone or "",
        "instagram_handle": lead.instagram_handle or "",
        "source": lead.source or "",
    }


def render_template(body: str, variables: dict[str, str]) -> str:
    """Substitute ``{{variable}}`` placeholders; unknown names are kept verbatim."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return variables[key]

    return _PLACEHOLDER_RE.sub(_replace, body)
