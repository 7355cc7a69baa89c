"""Central registry for SQLAlchemy models.

Importing this module loads every ORM class so foreign keys between domain
areas resolve no matter which model module is imported first.
"""

from app.domain.catalog import db_models as catalog_db_models  # noqa: F401
from app.domain.reservations import db_models as reservation_db_models  # noqa: F401
from app.domain.fulfillment import db_models as fulfillment_db_models  # noqa: F401
from app.domain.payments import db_models as payment_db_models  # noqa: F401
from app.domain.notifications import db_models as notification_db_models  # noqa: F401
from app.domain.ops import db_models as ops_db_models  # noqa: F401
