"""Gateway wire protocol: JSON envelopes over WebSocket text frames.

Every frame after the handshake challenge is an envelope::

    {"type": "req", "id": ..., "method": ..., "params": {...}}
    {"type": "res", "id": ..., "ok": true|false, "payload": {...}, "error": ...}

Decoding ignores fields it does not know about. Encoding always emits every
documented field, with ``null`` for absent optionals, because the gateway
may insist on their presence.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from typing import Any, Union

PROTOCOL_VERSION = 3

REQ = "req"
RES = "res"


class DecodeError(ValueError):
    """Raised when a frame is not a well-formed envelope."""


def _as_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"))


def _flat(mapping: Any) -> dict[str, str]:
    """Flatten a JSON object to ``str -> str``, dropping nulls."""
    if not isinstance(mapping, dict):
        return {}
    return {str(k): _as_str(v) for k, v in mapping.items() if v is not None}


def _opt(data: dict, key: str, cls):
    value = data.get(key)
    return cls.from_dict(value) if isinstance(value, dict) else None


# ── Handshake ────────────────────────────────────────────────────


@dataclass
class ClientInfo:
    version: str
    id: str = "clawnode-python"
    platform: str = sys.platform
    mode: str = "node"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "platform": self.platform,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ClientInfo:
        return cls(
            version=str(data.get("version", "")),
            id=str(data.get("id", "clawnode-python")),
            platform=str(data.get("platform", sys.platform)),
            mode=str(data.get("mode", "node")),
        )


@dataclass
class AuthInfo:
    token: str | None = None

    def to_dict(self) -> dict:
        return {"token": self.token}

    @classmethod
    def from_dict(cls, data: dict) -> AuthInfo:
        return cls(token=data.get("token"))


@dataclass
class DeviceInfo:
    """Wire form of a signed device assertion."""

    id: str
    public_key: str
    signature: str
    signed_at: int
    nonce: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "publicKey": self.public_key,
            "signature": self.signature,
            "signedAt": self.signed_at,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DeviceInfo:
        return cls(
            id=str(data.get("id", "")),
            public_key=str(data.get("publicKey", "")),
            signature=str(data.get("signature", "")),
            signed_at=int(data.get("signedAt", 0)),
            nonce=str(data.get("nonce", "")),
        )


@dataclass
class ConnectParams:
    client: ClientInfo
    caps: list[str]
    commands: list[str]
    permissions: dict[str, bool]
    user_agent: str
    device: DeviceInfo
    auth: AuthInfo | None = None
    min_protocol: int = PROTOCOL_VERSION
    max_protocol: int = PROTOCOL_VERSION
    role: str = "node"
    scopes: list[str] = field(default_factory=list)
    locale: str = "en-US"

    def to_dict(self) -> dict:
        return {
            "minProtocol": self.min_protocol,
            "maxProtocol": self.max_protocol,
            "client": self.client.to_dict(),
            "role": self.role,
            "scopes": list(self.scopes),
            "caps": list(self.caps),
            "commands": list(self.commands),
            "permissions": dict(self.permissions),
            "auth": self.auth.to_dict() if self.auth else None,
            "locale": self.locale,
            "userAgent": self.user_agent,
            "device": self.device.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConnectParams:
        return cls(
            client=ClientInfo.from_dict(data.get("client") or {}),
            caps=[str(c) for c in data.get("caps") or []],
            commands=[str(c) for c in data.get("commands") or []],
            permissions={str(k): bool(v) for k, v in (data.get("permissions") or {}).items()},
            user_agent=str(data.get("userAgent", "")),
            device=DeviceInfo.from_dict(data.get("device") or {}),
            auth=_opt(data, "auth", AuthInfo),
            min_protocol=int(data.get("minProtocol", PROTOCOL_VERSION)),
            max_protocol=int(data.get("maxProtocol", PROTOCOL_VERSION)),
            role=str(data.get("role", "node")),
            scopes=[str(s) for s in data.get("scopes") or []],
            locale=str(data.get("locale", "en-US")),
        )


@dataclass
class ConnectRequest:
    id: str
    params: ConnectParams
    type: str = REQ
    method: str = "connect"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "method": self.method,
            "params": self.params.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConnectRequest:
        return cls(
            id=str(data.get("id", "")),
            params=ConnectParams.from_dict(data.get("params") or {}),
            type=str(data.get("type", REQ)),
            method=str(data.get("method", "connect")),
        )


@dataclass
class AuthResponseInfo:
    device_token: str
    role: str = "node"
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "deviceToken": self.device_token,
            "role": self.role,
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> AuthResponseInfo:
        return cls(
            device_token=str(data.get("deviceToken", "")),
            role=str(data.get("role", "node")),
            scopes=[str(s) for s in data.get("scopes") or []],
        )


@dataclass
class ConnectPayload:
    type: str
    protocol: int
    policy: dict[str, int] = field(default_factory=dict)
    auth: AuthResponseInfo | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "protocol": self.protocol,
            "policy": dict(self.policy),
            "auth": self.auth.to_dict() if self.auth else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConnectPayload:
        policy = {}
        for key, value in (data.get("policy") or {}).items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                policy[str(key)] = int(value)
        return cls(
            type=str(data.get("type", "")),
            protocol=int(data.get("protocol", 0)),
            policy=policy,
            auth=_opt(data, "auth", AuthResponseInfo),
        )


@dataclass
class ConnectResponse:
    id: str
    ok: bool
    payload: ConnectPayload | None = None
    error: str | None = None
    type: str = RES

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "ok": self.ok,
            "payload": self.payload.to_dict() if self.payload else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConnectResponse:
        return cls(
            id=str(data.get("id", "")),
            ok=bool(data.get("ok", False)),
            payload=_opt(data, "payload", ConnectPayload),
            error=_error_text(data.get("error")),
            type=str(data.get("type", RES)),
        )


# ── Commands ─────────────────────────────────────────────────────


@dataclass
class InvokeRequest:
    id: str
    method: str
    params: dict[str, str] = field(default_factory=dict)
    type: str = REQ

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "method": self.method,
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict) -> InvokeRequest:
        return cls(
            id=str(data.get("id", "")),
            method=str(data.get("method") or ""),
            params=_flat(data.get("params")),
            type=str(data.get("type", REQ)),
        )


@dataclass
class InvokeResponse:
    id: str
    ok: bool
    payload: dict[str, str] | None = None
    error: str | None = None
    type: str = RES

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "ok": self.ok,
            "payload": dict(self.payload) if self.payload is not None else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> InvokeResponse:
        payload = data.get("payload")
        return cls(
            id=str(data.get("id", "")),
            ok=bool(data.get("ok", False)),
            payload=_flat(payload) if isinstance(payload, dict) else None,
            error=_error_text(data.get("error")),
            type=str(data.get("type", RES)),
        )

    @classmethod
    def success(cls, request_id: str, payload: dict[str, str]) -> InvokeResponse:
        return cls(id=request_id, ok=True, payload=payload)

    @classmethod
    def failure(cls, request_id: str, error: str) -> InvokeResponse:
        return cls(id=request_id, ok=False, error=error)


def _error_text(error: Any) -> str | None:
    # Some gateways send {"code": ..., "message": ...} instead of a string.
    if error is None or isinstance(error, str):
        return error
    if isinstance(error, dict) and "message" in error:
        return str(error["message"])
    return _as_str(error)


# ── UI tree ──────────────────────────────────────────────────────


@dataclass
class Bounds:
    left: int
    top: int
    right: int
    bottom: int

    def to_dict(self) -> dict:
        return {"left": self.left, "top": self.top, "right": self.right, "bottom": self.bottom}

    @classmethod
    def from_dict(cls, data: dict) -> Bounds:
        return cls(
            left=int(data.get("left", 0)),
            top=int(data.get("top", 0)),
            right=int(data.get("right", 0)),
            bottom=int(data.get("bottom", 0)),
        )


@dataclass
class UINode:
    """One node of an accessibility snapshot."""

    bounds: Bounds
    id: str | None = None
    text: str | None = None
    description: str | None = None
    class_name: str | None = None
    package_name: str | None = None
    clickable: bool = False
    scrollable: bool = False
    editable: bool = False
    checkable: bool = False
    checked: bool = False
    enabled: bool = True
    focused: bool = False
    selected: bool = False
    children: list[UINode] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "description": self.description,
            "className": self.class_name,
            "packageName": self.package_name,
            "bounds": self.bounds.to_dict(),
            "clickable": self.clickable,
            "scrollable": self.scrollable,
            "editable": self.editable,
            "checkable": self.checkable,
            "checked": self.checked,
            "enabled": self.enabled,
            "focused": self.focused,
            "selected": self.selected,
            "children": [c.to_dict() for c in self.children],
        }

    @classmethod
    def from_dict(cls, data: dict) -> UINode:
        return cls(
            bounds=Bounds.from_dict(data.get("bounds") or {}),
            id=data.get("id"),
            text=data.get("text"),
            description=data.get("description"),
            class_name=data.get("className"),
            package_name=data.get("packageName"),
            clickable=bool(data.get("clickable", False)),
            scrollable=bool(data.get("scrollable", False)),
            editable=bool(data.get("editable", False)),
            checkable=bool(data.get("checkable", False)),
            checked=bool(data.get("checked", False)),
            enabled=bool(data.get("enabled", True)),
            focused=bool(data.get("focused", False)),
            selected=bool(data.get("selected", False)),
            children=[cls.from_dict(c) for c in data.get("children") or [] if isinstance(c, dict)],
        )


# ── Framing ──────────────────────────────────────────────────────


@dataclass
class Response:
    """A ``res`` envelope whose payload shape depends on the request it answers.

    ``data`` keeps the raw object so the handshake can re-read it as a
    :class:`ConnectResponse`.
    """

    id: str
    ok: bool
    error: str | None
    data: dict

    @property
    def payload(self) -> dict | None:
        payload = self.data.get("payload")
        return payload if isinstance(payload, dict) else None

    def to_dict(self) -> dict:
        return {
            "type": RES,
            "id": self.id,
            "ok": self.ok,
            "payload": self.payload,
            "error": self.error,
        }

    def as_connect_response(self) -> ConnectResponse:
        return ConnectResponse.from_dict(self.data)

    def as_invoke_response(self) -> InvokeResponse:
        return InvokeResponse.from_dict(self.data)


Envelope = Union[Response, InvokeRequest]

Message = Union[ConnectRequest, ConnectResponse, InvokeRequest, InvokeResponse, Response]


def encode(message: Message) -> str:
    """Serialize a message to one text frame."""
    return json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False)


def decode(raw: str | bytes) -> Envelope:
    """Parse one text frame into a :class:`Response` or :class:`InvokeRequest`."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"Frame is not UTF-8: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Frame is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise DecodeError("Frame is not a JSON object")

    kind = data.get("type")
    if "id" not in data or data["id"] is None:
        raise DecodeError(f"Envelope without id (type={kind!r})")
    if kind == RES:
        return Response(
            id=str(data["id"]),
            ok=bool(data.get("ok", False)),
            error=_error_text(data.get("error")),
            data=data,
        )
    if kind == REQ:
        return InvokeRequest.from_dict(data)
    raise DecodeError(f"Unknown envelope type: {kind!r}")


def extract_nonce(challenge: str) -> str | None:
    """Return the nonce carried by a structured challenge, if any.

    Free-form challenges return ``None``; the caller then generates its own.
    """
    try:
        data = json.loads(challenge)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    for container in (data, data.get("payload")):
        if isinstance(container, dict):
            nonce = container.get("nonce")
            if isinstance(nonce, str) and nonce:
                return nonce
    return None
