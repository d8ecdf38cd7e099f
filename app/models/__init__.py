# app/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from app.models.user import User  # noqa: F401
from app.models.product import Product  # noqa: F401
from app.models.wallet import WalletAccount, Transaction  # noqa: F401
from app.models.order import Order  # noqa: F401
from app.models.cert import Cert, CertStatus  # noqa: F401
from app.models.task import Task, TaskStatus  # noqa: F401
from app.models.validation import DomainValidationRecord  # noqa: F401
from app.models.vendor_log import VendorCallLog  # noqa: F401
