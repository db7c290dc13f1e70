from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies arrive camelCase; snake_case is accepted too.

    Strings are stripped before length constraints are checked.
    """

    class Config:
        str_strip_whitespace = True
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True
