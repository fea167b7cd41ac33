# storefront/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from storefront.models.product import Product  # noqa: F401
from storefront.models.card import Card  # noqa: F401
from storefront.models.order import Order  # noqa: F401

from storefront.models.login_user import LoginUser  # noqa: F401
from storefront.models.setting import Setting  # noqa: F401
from storefront.models.review import Review  # noqa: F401
from storefront.models.user_notification import UserNotification  # noqa: F401
