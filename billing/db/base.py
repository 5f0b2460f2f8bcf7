from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """ this is the base class for all models """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        """
        default table name is the lowercased class name, models may override it
        """
        return cls.__name__.lower()
