from __future__ import annotations
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from aiohttp.web import Response
from multidict import MultiMapping
from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict, Field, field_validator

from streamrelay.misc.functions import md5_hex


__all__ = [
    'BaseModel',
    'BaseRequestModel',
    'BaseResponseModel',
    'StreamFormat',
    'SessionStatus',
    'ClientStatus',
    'ContentType',
    'Channel',
    'Episode',
    'Content',
    'StreamSource',
]

ALLOWED_URL_SCHEMES = ('http', 'https', 'rtmp', 'rtsp', 'udp', 'srt')


class BaseModel(PydanticBaseModel):
    pass


class BaseRequestModel(BaseModel):
    pass


class BaseResponseModel(BaseModel):
    def json_response(self, status_code: int = 200, **kwargs: Any) -> Response:
        return Response(
            text=self.model_dump_json(**kwargs),
            status=status_code,
            content_type='application/json',
        )


class StreamFormat(str, Enum):
    ts = 'ts'
    hls = 'hls'


class SessionStatus(str, Enum):
    starting = 'starting'
    active = 'active'
    stopped = 'stopped'
    error = 'error'


class ClientStatus(str, Enum):
    connected = 'connected'
    disconnected = 'disconnected'


class ContentType(str, Enum):
    channel = 'channel'
    episode = 'episode'


class _ContentBase(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: int
    title: Optional[str] = None

    @property
    def lookup_key(self) -> tuple[ContentType, int]:
        return ContentType(self.type), self.model_id  # type: ignore[attr-defined]


class Channel(_ContentBase):
    type: Literal["channel"] = "channel"


class Episode(_ContentBase):
    type: Literal["episode"] = "episode"


Content = Annotated[Union[Channel, Episode], Field(discriminator='type')]


def check_source_url(url: str) -> str:
    url = url.strip()
    scheme, sep, rest = url.partition('://')
    if not sep or not rest or scheme.lower() not in ALLOWED_URL_SCHEMES:
        raise ValueError(f"Unsupported source URL '{url}'")
    return url


class StreamSource(BaseRequestModel):
    """
    Describes what should be relayed.

    Two sources with the same `source_key` are served by the same session.
    The `failover_urls` are tried in order when the primary `url` cannot be
    started or its process dies while clients are still attached.
    Sessions sharing a `provider` may be limited in number, see the
    `sessions.stream_limits` setting.
    """
    url: str
    format: StreamFormat = StreamFormat.ts
    content: Optional[Content] = None
    user_agent: Optional[str] = None
    failover_urls: list[str] = Field(default_factory=list)
    provider: Optional[str] = None

    @field_validator('url')
    @classmethod
    def supported_scheme(cls, url: str) -> str:
        return check_source_url(url)

    @field_validator('failover_urls')
    @classmethod
    def supported_failover_schemes(cls, urls: list[str]) -> list[str]:
        return [check_source_url(url) for url in urls]

    @property
    def source_key(self) -> str:
        if self.content is None:
            return f"manual:{self.format.value}:{md5_hex(self.url)}"
        return f"{self.content.type}:{self.content.model_id}:{self.format.value}:{md5_hex(self.url)}"

    @property
    def urls(self) -> list[str]:
        return [self.url, *self.failover_urls]

    @classmethod
    def from_query(cls, query: MultiMapping[str]) -> StreamSource:
        """
        Builds a source from flat URL query parameters.

        The optional content reference is given by `type` and `model_id`.
        Failover sources are given by repeating the `failover` parameter.
        Raises `pydantic.ValidationError` on invalid parameters.
        """
        data: dict[str, Any] = {"url": query.get("url", "")}
        for key in ("format", "user_agent", "provider"):
            if key in query:
                data[key] = query[key]
        failover_urls = query.getall("failover", [])
        if failover_urls:
            data["failover_urls"] = list(failover_urls)
        if "type" in query or "model_id" in query:
            data["content"] = {
                "type": query.get("type", ""),
                "model_id": query.get("model_id", ""),
            }
        return cls.model_validate(data)
