import datetime as dt
import uuid
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Mapping, Optional, TypeVar

from pydantic import (
    AnyUrl,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
)
from pydantic_core import PydanticCustomError

from models import DEFAULT_CATEGORY_COLOR

FORM_ERROR_KEY = "_form"
HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"
# 9,999,999,999.99 keeps cents inside a signed 64-bit integer.
MONEY_MAX_DIGITS = 12

FieldErrors = dict[str, list[str]]
SchemaT = TypeVar("SchemaT", bound="InputSchema")

Money = Annotated[
    Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")
]

_url_adapter = TypeAdapter(AnyUrl)


class InputSchema(BaseModel):
    """Base for validated inputs.

    ``error_messages`` maps a field name to ``{pydantic error type: message}``
    so every schema can word its errors for end users. Unmapped errors keep
    pydantic's own message.
    """

    error_messages: ClassVar[dict[str, dict[str, str]]] = {}
    # Fields that may be omitted but never explicitly set to null.
    non_nullable: ClassVar[tuple[str, ...]] = ()

    @field_validator("*")
    @classmethod
    def _reject_explicit_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None and info.field_name in cls.non_nullable:
            raise PydanticCustomError("null_not_allowed", "Value cannot be null")
        return value


def collect_field_errors(
    schema: type[InputSchema], exc: ValidationError
) -> FieldErrors:
    errors: FieldErrors = {}
    for detail in exc.errors():
        field = str(detail["loc"][0]) if detail["loc"] else FORM_ERROR_KEY
        messages = schema.error_messages.get(field, {})
        message = messages.get(detail["type"], detail["msg"])
        bucket = errors.setdefault(field, [])
        if message not in bucket:
            bucket.append(message)
    return errors


def validate(
    schema: type[SchemaT], data: Mapping[str, Any]
) -> tuple[Optional[SchemaT], Optional[FieldErrors]]:
    """Validate ``data`` against ``schema`` collecting every field error."""
    try:
        return schema.model_validate(dict(data)), None
    except ValidationError as exc:
        return None, collect_field_errors(schema, exc)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _to_naive_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is not None:
        return value.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return value


# ---------------------------------------------------------------- auth


class LoginIn(InputSchema):
    error_messages = {
        "email": {
            "missing": "Email is required",
            "value_error": "Invalid email address",
        },
        "password": {
            "missing": "Password is required",
            "string_too_short": "Password is required",
        },
    }

    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class RegisterIn(LoginIn):
    error_messages = {
        "name": {"string_too_long": "Name must not exceed 100 characters"},
        "email": LoginIn.error_messages["email"],
        "password": {
            "missing": "Password is required",
            "string_too_short": "Password must be at least 8 characters",
        },
    }

    name: Optional[str] = Field(default=None, max_length=100)
    password: str = Field(..., min_length=8)

    @field_validator("name", mode="before")
    @classmethod
    def _blank_name(cls, value: Any) -> Any:
        return _blank_to_none(value)


# ---------------------------------------------------------------- expenses

_AMOUNT_MESSAGES = {
    "missing": "Amount is required",
    "decimal_parsing": "Amount must be a number",
    "decimal_type": "Amount must be a number",
    "finite_number": "Amount must be a number",
    "greater_than": "Amount must be positive",
    "decimal_max_places": "Amount can have at most 2 decimal places",
    "decimal_max_digits": "Amount is too large",
    "decimal_whole_digits": "Amount is too large",
    "null_not_allowed": "Amount is required",
}
_DESCRIPTION_MESSAGES = {
    "missing": "Description is required",
    "string_type": "Description must be text",
    "string_too_short": "Description cannot be empty",
    "string_too_long": "Description must not exceed 255 characters",
    "null_not_allowed": "Description cannot be empty",
}
_CATEGORY_ID_MESSAGES = {
    "missing": "Category is required",
    "uuid_parsing": "Invalid category ID",
    "uuid_type": "Invalid category ID",
    "null_not_allowed": "Category is required",
}
_DATE_MESSAGES = {
    "missing": "Date is required",
    "datetime_parsing": "Invalid date",
    "datetime_type": "Invalid date",
    "datetime_from_date_parsing": "Invalid date",
    "null_not_allowed": "Invalid date",
}


class _ExpenseFields(InputSchema):
    model_config = ConfigDict(str_strip_whitespace=True)

    error_messages = {
        "amount": _AMOUNT_MESSAGES,
        "description": _DESCRIPTION_MESSAGES,
        "category_id": _CATEGORY_ID_MESSAGES,
        "date": _DATE_MESSAGES,
    }

    @field_validator("date", check_fields=False)
    @classmethod
    def _not_in_future(cls, value: Optional[dt.datetime]) -> Optional[dt.datetime]:
        if value is None:
            return value
        value = _to_naive_utc(value)
        if value > dt.datetime.utcnow():
            raise PydanticCustomError("date_max", "Date cannot be in the future")
        return value

    @field_validator("receipt_url", mode="before", check_fields=False)
    @classmethod
    def _blank_receipt_url(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("receipt_url", check_fields=False)
    @classmethod
    def _valid_receipt_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            _url_adapter.validate_python(value)
        except ValidationError:
            raise PydanticCustomError("url", "Invalid receipt URL") from None
        return value


class ExpenseCreate(_ExpenseFields):
    amount: Decimal = Field(
        ..., gt=0, max_digits=MONEY_MAX_DIGITS, decimal_places=2
    )
    description: str = Field(..., min_length=1, max_length=255)
    category_id: uuid.UUID
    date: dt.datetime
    receipt_url: Optional[str] = Field(default=None, max_length=2048)


class ExpenseUpdate(_ExpenseFields):
    non_nullable = ("amount", "description", "category_id", "date")

    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=MONEY_MAX_DIGITS, decimal_places=2
    )
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    category_id: Optional[uuid.UUID] = None
    date: Optional[dt.datetime] = None
    receipt_url: Optional[str] = Field(default=None, max_length=2048)


class BulkIds(InputSchema):
    ids: list[str] = Field(default_factory=list)


class BulkCategoryUpdate(BulkIds):
    category_id: str


# ---------------------------------------------------------------- categories

_NAME_MESSAGES = {
    "missing": "Category name is required",
    "string_type": "Category name must be text",
    "string_too_short": "Category name must be at least 2 characters",
    "string_too_long": "Category name must not exceed 50 characters",
    "null_not_allowed": "Category name is required",
}
_COLOR_MESSAGES = {
    "string_pattern_mismatch": "Color must be a valid hex color (e.g., #FF0000)",
    "null_not_allowed": "Color must be a valid hex color (e.g., #FF0000)",
}
_ICON_MESSAGES = {"string_too_long": "Icon must not exceed 10 characters"}
_BUDGET_MESSAGES = {
    "decimal_parsing": "Budget must be a number",
    "decimal_type": "Budget must be a number",
    "finite_number": "Budget must be a number",
    "greater_than": "Budget must be positive",
    "decimal_max_places": "Budget can have at most 2 decimal places",
    "decimal_max_digits": "Budget is too large",
    "decimal_whole_digits": "Budget is too large",
}


class _CategoryFields(InputSchema):
    model_config = ConfigDict(str_strip_whitespace=True)

    error_messages = {
        "name": _NAME_MESSAGES,
        "color": _COLOR_MESSAGES,
        "icon": _ICON_MESSAGES,
        "budget": _BUDGET_MESSAGES,
    }

    @field_validator("icon", "budget", mode="before", check_fields=False)
    @classmethod
    def _blank_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CategoryCreate(_CategoryFields):
    name: str = Field(..., min_length=2, max_length=50)
    color: str = Field(default=DEFAULT_CATEGORY_COLOR, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(default=None, max_length=10)
    budget: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=MONEY_MAX_DIGITS, decimal_places=2
    )

    @field_validator("color", mode="before")
    @classmethod
    def _default_color(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_CATEGORY_COLOR
        return value


class CategoryUpdate(_CategoryFields):
    non_nullable = ("name", "color")

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(default=None, max_length=10)
    budget: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=MONEY_MAX_DIGITS, decimal_places=2
    )


# ---------------------------------------------------------------- output


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: Optional[str]


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    color: str
    icon: Optional[str]
    budget: Optional[Money]
    created_at: dt.datetime
    updated_at: dt.datetime


class CategoryWithCountOut(CategoryOut):
    expense_count: int


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Money
    description: str
    date: dt.datetime
    receipt_url: Optional[str]
    category_id: str
    category: Optional[CategoryOut] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class CategoryDetailOut(CategoryWithCountOut):
    recent_expenses: list[ExpenseOut]


class ExpensePageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    expenses: list[ExpenseOut]
    total: int
    has_more: bool


class CategoryBreakdownOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: str
    name: str
    color: str
    icon: Optional[str]
    total: Money
    count: int


class ExpenseStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: str
    start: dt.datetime
    end: dt.datetime
    total: Money
    count: int
    average_per_day: float
    by_category: list[CategoryBreakdownOut]
    previous_total: Money
    percentage_change: float


class CategoryStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_spent: Money
    monthly_spent: Money
    budget: Optional[Money]
    budget_remaining: Optional[Money]
    budget_percentage: Optional[float]
    expense_count: int


class DailyBucketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: dt.date
    total: Money
    expenses: list[ExpenseOut]
