from .messages import MessagesMixin
from .profiles import ProfilesMixin
from .schema import SchemaMixin
from .sessions import SessionsMixin
from .summaries import SummariesMixin

__all__ = [
    "SchemaMixin",
    "SessionsMixin",
    "MessagesMixin",
    "ProfilesMixin",
    "SummariesMixin",
]
