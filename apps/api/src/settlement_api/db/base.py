from sqlalchemy.orm import DeclarativeBase, declared_attr


def enum_values(enum_cls) -> list[str]:
    """Persist enum values ('pending') rather than member names ('PENDING')."""

    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models with automatic table naming."""

    @declared_attr.directive
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__.lower()


# Import models so metadata is complete for Alembic and create_all
import settlement_api.models  # noqa: E402,F401
