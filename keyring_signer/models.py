from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class MirrorModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class MirrorSignature(MirrorModel):
    public_key_prefix: str
    signature: str = ""
    type: str = "ED25519"
    consensus_timestamp: Optional[str] = None


class MirrorSchedule(MirrorModel):
    schedule_id: str
    creator_account_id: str
    payer_account_id: str
    transaction_body: str = ""
    signatures: List[MirrorSignature] = Field(default_factory=list)
    executed_timestamp: Optional[str] = None
    deleted: bool = False
    memo: str = ""


class MirrorLinks(MirrorModel):
    next: Optional[str] = None


class MirrorScheduleList(MirrorModel):
    schedules: List[MirrorSchedule] = Field(default_factory=list)
    links: MirrorLinks = Field(default_factory=MirrorLinks)


class MirrorKey(MirrorModel):
    type: str = Field(alias="_type")
    key: str


class MirrorAccount(MirrorModel):
    account: str
    key: Optional[MirrorKey] = None


class MirrorTopicMessage(MirrorModel):
    message: str
    sequence_number: int = 0
    consensus_timestamp: Optional[str] = None


class MirrorTopicMessageList(MirrorModel):
    messages: List[MirrorTopicMessage] = Field(default_factory=list)
    links: MirrorLinks = Field(default_factory=MirrorLinks)
