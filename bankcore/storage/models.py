from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass
class UserAccount:
    id: str
    username: str
    email: str
    account_numbers: Dict[str, str] = field(default_factory=dict)
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    street: Optional[str] = None
    apt: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    id_number: Optional[str] = None
    issue_state: Optional[str] = None
    id_expiration: Optional[str] = None
    ssn: Optional[str] = None
    approved: bool = True
    reset_token: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    balances: Dict[str, float] = field(default_factory=dict)
    last_login: Optional[datetime] = None
    session_epoch: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


PROFILE_FIELDS = (
    "first_name",
    "middle_name",
    "last_name",
    "phone",
    "date_of_birth",
    "street",
    "apt",
    "city",
    "state",
    "zip_code",
    "id_number",
    "issue_state",
    "id_expiration",
    "ssn",
)


@dataclass
class Transaction:
    user_id: str
    amount: float
    account_type: str
    balance_after: float
    description: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = False
    last_step: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
