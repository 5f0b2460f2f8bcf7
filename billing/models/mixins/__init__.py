from .timestamp import TimestampMixin, utcnow

__all__ = ["TimestampMixin", "utcnow"]
