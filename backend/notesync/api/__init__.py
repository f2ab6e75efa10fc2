"""NoteSync REST API package.

Sub-modules expose FastAPI routers for each domain:
- auth: device-scoped session gateway (register, login, refresh, logout, devices)
- sync: change relay between a user's devices (pull, push, status)
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Schema base whose JSON field names are camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
