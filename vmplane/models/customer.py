from sqlmodel import SQLModel, Field
from typing import Optional

class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True, max_length=100)
    email: str = Field(index=True, unique=True, max_length=255)
    # bcrypt digest, never the password itself
    password_hash: str = Field(max_length=255)
