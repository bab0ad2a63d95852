from enum import Enum

from sqlmodel import Field, SQLModel


class Role(str, Enum):
    patient = "patient"
    doctor = "doctor"
    receptionist = "receptionist"
    admin = "admin"


STAFF_ROLES = frozenset({Role.receptionist.value, Role.admin.value})


class UserBase(SQLModel):
    name: str
    email: str = Field(unique=True, index=True)
    role: str = Field(index=True, max_length=16)  # Role value
    phone: str | None = None
    specialization: str | None = None  # doctors only


class User(UserBase, table=True):
    __tablename__ = "users"
    id: int | None = Field(default=None, primary_key=True)
