from typing import Any, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_request(model: Type[ModelT], data: Any) -> ModelT:
    """Coerce a mapping (or an existing record) into `model`.

    Field errors surface as the application's ValidationError so callers
    outside the HTTP layer see the same error taxonomy.
    """
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__}",
            details={"errors": errors}
        ) from exc
