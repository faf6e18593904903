"""SQLAlchemy models for the AI Tool Consultant backend.

All models are imported here so that ``Base.metadata`` knows every table
before ``create_all`` runs. If you add a new model, import it in this file.
"""

from app.models.subscription import Subscription
from app.models.user import User

__all__ = [
    "Subscription",
    "User",
]
