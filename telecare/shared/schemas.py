from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def to_camel(value: str) -> str:
    """Convert snake_case field names to lowerCamelCase for wire payloads."""
    if "_" not in value:
        return value
    head, *tail = value.split("_")
    return head + "".join(word.capitalize() for word in tail if word)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> dict:
        """JSON-ready dict using camelCase aliases, as sent over the realtime channel."""
        return self.model_dump(by_alias=True, mode="json")


class FrozenCamelModel(CamelModel):
    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, frozen=True
    )
