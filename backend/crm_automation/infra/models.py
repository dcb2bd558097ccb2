"""Central registry for SQLAlchemy models.

Importing this module loads every ORM class so that ``Base.metadata`` is
complete for ``create_all`` in tests and for Alembic autogenerate.
"""

from crm_automation.domain.leads import db_models as leads_db_models  # noqa: F401
from crm_automation.domain.sellers import db_models as sellers_db_models  # noqa: F401
from crm_automation.domain.message_templates import db_models as templates_db_models  # noqa: F401
from crm_automation.domain.notifications import db_models as notifications_db_models  # noqa: F401
from crm_automation.domain.automations import db_models as automations_db_models  # noqa: F401
