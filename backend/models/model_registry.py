"""Central registry for SQLAlchemy models.

Alembic revisions and ``init_database`` call ``register_all_models`` so the
metadata is complete before ``create_all`` or autogenerate runs.
"""


def register_all_models() -> None:
    """Import every module that declares Base subclasses as a side effect."""
    from models.database import (  # noqa: F401
        LinkedAccount,
        NotificationLog,
        NotificationPreference,
        OAuthState,
        Opportunity,
        User,
        UserTrade,
        UserUsage,
    )

    _ = (
        LinkedAccount,
        NotificationLog,
        NotificationPreference,
        OAuthState,
        Opportunity,
        User,
        UserTrade,
        UserUsage,
    )
