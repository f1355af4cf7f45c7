"""
Database Schemas for the Store API

Each record model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class User -> collection "user"

Request payload models live at the bottom; they carry the field rules that are
checked before anything reaches the database.
"""
from datetime import datetime
from typing import List, Optional, Literal

from pydantic import (
    AfterValidator, BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, HttpUrl, StringConstraints, TypeAdapter,
    ValidationError, model_validator,
)
from typing_extensions import Annotated

Role = Literal["user", "admin"]
Category = Literal["electronics", "clothing", "books", "home", "sports", "other"]


def check_name_letters(value: str) -> str:
    if not all(ch.isalpha() or ch.isspace() for ch in value):
        raise ValueError("Name must contain only letters and spaces")
    return value


def check_password_strength(value: str) -> str:
    if not (
        any(ch.islower() for ch in value)
        and any(ch.isupper() for ch in value)
        and any(ch.isdigit() for ch in value)
    ):
        raise ValueError("Password must contain at least one lowercase letter, one uppercase letter and one number")
    return value


_http_url = TypeAdapter(HttpUrl)


def check_http_url(value: str) -> str:
    try:
        _http_url.validate_python(value)
    except ValidationError:
        raise ValueError("Each image must be a valid URL")
    return value


def lowercase(value):
    return value.strip().lower() if isinstance(value, str) else value


Email = Annotated[EmailStr, AfterValidator(str.lower)]
UserName = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=2, max_length=50),
    AfterValidator(check_name_letters),
]
Password = Annotated[str, StringConstraints(min_length=6), AfterValidator(check_password_strength)]
ProductName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=100)]
Description = Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=1000)]
Brand = Annotated[str, StringConstraints(strip_whitespace=True, max_length=50)]
Tag = Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, min_length=1, max_length=20)]
CategoryIn = Annotated[Category, BeforeValidator(lowercase)]
ImageUrl = Annotated[str, AfterValidator(check_http_url)]


class Schema(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)


# Core domain models

class User(Schema):
    name: str
    email: EmailStr
    hashed_password: str
    role: Role = "user"
    is_active: bool = True
    last_login: Optional[datetime] = None


class Dimensions(Schema):
    height: Optional[float] = Field(None, ge=0)
    width: Optional[float] = Field(None, ge=0)
    depth: Optional[float] = Field(None, ge=0)


class Specifications(Schema):
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    color: Optional[str] = None
    material: Optional[str] = None


class Ratings(Schema):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(Schema):
    name: str
    description: str
    price: float = Field(..., gt=0)
    category: Category
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)
    brand: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    specifications: Optional[Specifications] = None
    ratings: Ratings = Field(default_factory=Ratings)
    is_active: bool = True
    created_by: str = Field(..., description="Id of the user that created the product")


# Request payloads

class PartialUpdate(Schema):
    """Every field optional, but an empty payload is rejected."""

    @model_validator(mode="after")
    def at_least_one_field(self):
        if not self.model_dump(exclude_none=True):
            raise ValueError("At least one field must be provided")
        return self


class UserRegister(Schema):
    name: UserName
    email: Email
    password: Password


class UserLogin(Schema):
    email: Email
    password: str = Field(..., min_length=1)


class UserUpdate(PartialUpdate):
    name: Optional[UserName] = None
    email: Optional[Email] = None
    password: Optional[Password] = None


class AdminUserUpdate(UserUpdate):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class ProductCreate(Schema):
    name: ProductName
    description: Description
    price: float = Field(..., ge=0.01)
    category: CategoryIn
    stock: int = Field(..., ge=0)
    images: List[ImageUrl] = Field(default_factory=list)
    brand: Optional[Brand] = None
    tags: List[Tag] = Field(default_factory=list)
    specifications: Optional[Specifications] = None


class ProductUpdate(PartialUpdate):
    name: Optional[ProductName] = None
    description: Optional[Description] = None
    price: Optional[float] = Field(None, ge=0.01)
    category: Optional[CategoryIn] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[ImageUrl]] = None
    brand: Optional[Brand] = None
    tags: Optional[List[Tag]] = None
    specifications: Optional[Specifications] = None
