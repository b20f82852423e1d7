from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional

Priority = Literal["low", "medium", "high"]

DEFAULT_LIST = "Personal"
DEFAULT_PRIORITY = "medium"


class WireModel(BaseModel):
    """Accepts both the camelCase wire names and the Python field names."""
    model_config = ConfigDict(populate_by_name=True)


class Task(WireModel):
    id: int
    title: str
    description: str = ""
    completed: bool = False
    due_date: str = Field("", alias="dueDate")  # YYYY-MM-DD or empty
    list_name: str = Field(DEFAULT_LIST, alias="list")
    tags: list[str] = []
    subtasks: list[str] = []
    priority: Priority = DEFAULT_PRIORITY
    created_at: str = Field(alias="createdAt")  # ISO format datetime string
    updated_at: Optional[str] = Field(None, alias="updatedAt")


class TaskCreate(WireModel):
    # title is checked by the handler so a missing title is a 400, not a schema error
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[str] = Field(None, alias="dueDate")
    list_name: Optional[str] = Field(None, alias="list")
    tags: Optional[list[str]] = None
    subtasks: Optional[list[str]] = None
    priority: Optional[Priority] = None


class TaskUpdate(WireModel):
    title: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None
    due_date: Optional[str] = Field(None, alias="dueDate")
    list_name: Optional[str] = Field(None, alias="list")
    tags: Optional[list[str]] = None
    subtasks: Optional[list[str]] = None
    priority: Optional[Priority] = None

    def changes(self) -> dict:
        """Fields the client actually sent with a non-null value."""
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class User(BaseModel):
    id: int
    email: str
    password_hash: str
    created_at: str


class PublicUser(WireModel):
    id: int
    email: str
    created_at: Optional[str] = Field(None, alias="createdAt")


class PasswordReset(BaseModel):
    id: int
    email: str
    otp: str
    expires_at: str
    used: bool = False
    created_at: str


class Credentials(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    email: Optional[str] = None
    otp: Optional[str] = None


class ResetPasswordRequest(WireModel):
    email: Optional[str] = None
    new_password: Optional[str] = Field(None, alias="newPassword")
    reset_token: Optional[str] = Field(None, alias="resetToken")


class ChatRequest(BaseModel):
    message: Optional[str] = None
