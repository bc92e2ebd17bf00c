from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from stock_analyst.orchestration.session import Message
from stock_analyst.streaming.errors import ValidationError


class ApiModel(BaseModel):
    # the browser page sends camelCase keys
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def require(self, *fields: str) -> None:
        """Raise ValidationError naming every empty field (by its wire name)."""
        missing = []
        for name in fields:
            info = type(self).model_fields[name]
            value = getattr(self, name)
            if value is None or (isinstance(value, (str, list)) and not value):
                missing.append(info.alias or name)
        if missing:
            raise ValidationError(missing)


class RelayRequest(ApiModel):
    session_id: str = Field("default", alias="sessionId")
    api_key: str = Field("", alias="apiKey")
    api_url: str = Field("", alias="apiUrl")
    model: str = ""


class AnalyzeRequest(RelayRequest):
    stock_code: str = Field("", alias="stockCode")
    exchange: str = "auto"


class ChatRequest(RelayRequest):
    # `message` continues the server-held session, `messages` is a full client-held log
    message: Optional[str] = None
    messages: Optional[List[Message]] = None


class SessionRequest(ApiModel):
    session_id: str = Field("default", alias="sessionId")


class LoadSessionRequest(SessionRequest):
    history_id: Optional[int] = Field(None, alias="historyId")


class HistoryCreate(ApiModel):
    stock_code: str = Field("", alias="stockCode")
    stock_name: str = Field("", alias="stockName")
    content: str = ""


class RenderRequest(ApiModel):
    text: str = ""


class RenderResponse(BaseModel):
    html: str
