"""UniFi Network controller adapter.

Talks to the Network application REST API over HTTPS:

- v1 collections: ``{prefix}/api/s/{site}/rest/{collection}``
- v2 collections: ``{prefix}/v2/api/site/{site}/{path}`` (zone-based
  firewall, traffic rules, WireGuard users)

``prefix`` is ``/proxy/network`` on UniFi OS consoles and empty on
standalone controllers. Several logical collections share one controller
collection (networks, VPN servers and tunnels all live in ``networkconf``);
endpoint filters keep them apart.

Live documents are returned with reference ids already mapped back to
logical names so the Diff Engine compares by name only.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from ..errors import RetryableAPIError, TerminalAPIError
from ..reconcile.entities import (
    REFERENCE_FIELDS,
    Collection,
    logical_name_of,
    translate_references,
)
from ..utils.connection import with_retry
from ..utils.logging_config import timed
from .base import Controller, ControllerConfig, LiveEntity

logger = logging.getLogger(__name__)

VPN_PURPOSES = ("remote-user-vpn", "site-vpn")


@dataclass(frozen=True)
class Endpoint:
    """Where and how a logical collection lives on the controller."""
    path: str
    v2: bool = False
    # Keeps only the documents belonging to this logical collection
    accepts: Optional[Callable[[dict], bool]] = None
    # v2 updates replace the whole document
    full_update: bool = False
    # Delete by writing these fields instead of removing the document
    delete_fields: Optional[dict] = None
    # Path is nested below a parent entity: (field holding the parent id, parent collection)
    parent: Optional[tuple[str, str]] = None
    # Writes go to {path}/{key}[/{id}]; updates leave key and site_id out
    keyed: bool = False


ENDPOINTS: dict[str, Endpoint] = {
    Collection.NETWORK.value: Endpoint(
        "networkconf", accepts=lambda d: d.get("purpose") not in VPN_PURPOSES,
    ),
    Collection.FIREWALL_ZONE.value: Endpoint("firewall/zone", v2=True, full_update=True),
    Collection.FIREWALL_GROUP.value: Endpoint("firewallgroup"),
    Collection.RADIUS_PROFILE.value: Endpoint("radiusprofile"),
    Collection.WIFI.value: Endpoint("wlanconf"),
    Collection.PORT_PROFILE.value: Endpoint("portconf"),
    Collection.TRAFFIC_RULE.value: Endpoint("trafficrules", v2=True, full_update=True),
    Collection.FIREWALL_POLICY.value: Endpoint("firewall-policies", v2=True, full_update=True),
    Collection.WIREGUARD_SERVER.value: Endpoint(
        "networkconf", accepts=lambda d: d.get("purpose") == "remote-user-vpn",
    ),
    Collection.WIREGUARD_PEER.value: Endpoint(
        "wireguard/{parent}/users", v2=True, full_update=True,
        parent=("server_id", Collection.WIREGUARD_SERVER.value),
    ),
    Collection.SITE_TO_SITE_VPN.value: Endpoint(
        "networkconf", accepts=lambda d: d.get("purpose") == "site-vpn",
    ),
    Collection.PORT_FORWARD.value: Endpoint("portforward"),
    Collection.DHCP_RESERVATION.value: Endpoint(
        "user",
        accepts=lambda d: bool(d.get("use_fixedip")),
        delete_fields={"use_fixedip": False, "fixed_ip": ""},
    ),
    Collection.GLOBAL_SETTING.value: Endpoint("setting", keyed=True),
}


def endpoint_for(collection: str) -> Endpoint:
    """Named collections have fixed endpoints, schema-backed ones map 1:1."""
    return ENDPOINTS.get(collection) or Endpoint(collection)


def _document_id(doc: dict) -> Optional[str]:
    return doc.get("_id") or doc.get("id")


class UniFiController(Controller):
    """UniFi Network controller over HTTPS (httpx)."""

    def __init__(
        self,
        config: ControllerConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config)
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._prefix = "/proxy/network" if config.unifi_os else ""
        # Raw controller documents per logical collection, until the next write
        self._raw: dict[str, list[dict]] = {}
        # Nested entities: device id -> parent id
        self._parents: dict[str, str] = {}

    # --- session ---

    @with_retry(max_attempts=3, min_wait=1, max_wait=10)
    async def connect(self) -> bool:
        """Log in and keep the session cookie (and CSRF token on UniFi OS)."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.base_url,
                verify=self.config.verify_ssl,
                timeout=httpx.Timeout(self.config.timeout),
                transport=self._transport,
                follow_redirects=True,
            )
        logger.info(f"Connecting to UniFi controller at {self.config.base_url}")
        await self._login()
        self._connected = True
        return True

    async def _login(self) -> None:
        path = "/api/auth/login" if self.config.unifi_os else "/api/login"
        payload = {
            "username": self.config.username,
            "password": self.config.get_password(),
            "remember": True,
        }
        try:
            resp = await self._http.post(path, json=payload)
        except httpx.TransportError as e:
            raise RetryableAPIError(f"login failed: {e}") from e
        if resp.status_code >= 500:
            raise RetryableAPIError("login failed", status=resp.status_code)
        if resp.status_code >= 400:
            raise TerminalAPIError(
                f"login rejected for user '{self.config.username}'", status=resp.status_code
            )
        token = resp.headers.get("X-CSRF-Token") or resp.headers.get("x-updated-csrf-token")
        if token:
            self._http.headers["X-CSRF-Token"] = token
        logger.debug(f"Logged in to {self.config.base_url}")

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        self._raw.clear()
        self._connected = False
        logger.info(f"Disconnected from {self.host}")

    # --- transport ---

    def _url(self, endpoint: Endpoint, parent: Optional[str] = None,
             device_id: Optional[str] = None, key: Optional[str] = None) -> str:
        path = endpoint.path.format(parent=parent) if endpoint.parent else endpoint.path
        if endpoint.keyed and key:
            path += f"/{key}"
        site = self.config.site
        if endpoint.v2:
            url = f"{self._prefix}/v2/api/site/{site}/{path}"
        else:
            url = f"{self._prefix}/api/s/{site}/rest/{path}"
        if device_id:
            url += f"/{device_id}"
        return url

    async def _request(
        self,
        method: str,
        url: str,
        payload: Optional[dict] = None,
        collection: Optional[str] = None,
        name: Optional[str] = None,
        relogin: bool = True,
    ) -> Any:
        """Send one request and map failures onto the API error types."""
        if self._http is None:
            raise TerminalAPIError("not connected", collection, name)
        try:
            resp = await self._http.request(method, url, json=payload)
        except httpx.TimeoutException as e:
            raise RetryableAPIError(f"timeout: {e}", collection, name) from e
        except httpx.TransportError as e:
            raise RetryableAPIError(f"transport error: {e}", collection, name) from e

        if resp.status_code == 401 and relogin:
            # Session expired
            logger.info("Session expired, logging in again")
            await self._login()
            return await self._request(method, url, payload, collection, name, relogin=False)

        body: Any = None
        if resp.content:
            try:
                body = resp.json()
            except ValueError:
                body = None

        if resp.status_code >= 500:
            raise RetryableAPIError(self._message(body, resp), collection, name, resp.status_code)
        if resp.status_code >= 400:
            raise TerminalAPIError(self._message(body, resp), collection, name, resp.status_code)

        if isinstance(body, dict) and isinstance(body.get("meta"), dict):
            if body["meta"].get("rc") == "error":
                raise TerminalAPIError(self._message(body, resp), collection, name,
                                       resp.status_code)
            return body.get("data", [])
        return body

    @staticmethod
    def _message(body: Any, resp: httpx.Response) -> str:
        if isinstance(body, dict):
            meta = body.get("meta")
            if isinstance(meta, dict) and meta.get("msg"):
                return str(meta["msg"])
            for key in ("message", "msg", "error"):
                if body.get(key):
                    return str(body[key])
        return resp.reason_phrase or f"HTTP {resp.status_code}"

    # --- reads ---

    async def _documents(self, collection: str) -> list[dict]:
        """Raw documents of a logical collection (cached until the next write)."""
        if collection in self._raw:
            return self._raw[collection]

        endpoint = endpoint_for(collection)
        if endpoint.parent is not None:
            _, parent_collection = endpoint.parent
            docs = []
            for parent in await self._documents(parent_collection):
                parent_id = _document_id(parent)
                found = await self._request(
                    "GET", self._url(endpoint, parent=parent_id), collection=collection
                )
                for doc in found or []:
                    doc = dict(doc)
                    doc.setdefault(endpoint.parent[0], parent_id)
                    self._parents[_document_id(doc)] = parent_id
                    docs.append(doc)
        else:
            found = await self._request("GET", self._url(endpoint), collection=collection)
            docs = [d for d in (found or []) if isinstance(d, dict)]
            if endpoint.accepts is not None:
                docs = [d for d in docs if endpoint.accepts(d)]

        self._raw[collection] = docs
        return docs

    async def _name_table(self, collection: str) -> dict[tuple[str, str], str]:
        """(target collection, device id) -> logical name for reference fields."""
        table: dict[tuple[str, str], str] = {}
        targets = {ref.target.value for ref in REFERENCE_FIELDS.get(collection, ())}
        for target in sorted(targets):
            for doc in await self._documents(target):
                doc_id, name = _document_id(doc), logical_name_of(target, doc)
                if doc_id and name:
                    table[(target, doc_id)] = name
        return table

    @timed("list")
    async def list(self, collection: str) -> list[LiveEntity]:
        """List a collection with references mapped to logical names."""
        docs = await self._documents(collection)
        table = await self._name_table(collection)

        entities = []
        for doc in docs:
            doc_id, name = _document_id(doc), logical_name_of(collection, doc)
            if not doc_id or not name:
                continue
            fields, _ = translate_references(collection, doc, table)
            entities.append(LiveEntity(name=name, id=doc_id, fields=fields))
        return entities

    # --- writes ---

    def _parent_of(self, endpoint: Endpoint, fields: dict, device_id: Optional[str]) -> Optional[str]:
        if endpoint.parent is None:
            return None
        parent = fields.get(endpoint.parent[0])
        if parent is None and device_id is not None:
            parent = self._parents.get(device_id)
        return parent

    @timed("create")
    async def create(self, collection: str, fields: dict[str, Any]) -> str:
        endpoint = endpoint_for(collection)
        name = logical_name_of(collection, fields)
        url = self._url(
            endpoint,
            parent=self._parent_of(endpoint, fields, None),
            key=fields.get("key") if endpoint.keyed else None,
        )
        body = await self._request("POST", url, fields, collection, name)
        self._raw.clear()

        created = body[0] if isinstance(body, list) and body else body
        device_id = _document_id(created) if isinstance(created, dict) else None
        if not device_id:
            raise TerminalAPIError("controller returned no id", collection, name)
        if endpoint.parent is not None:
            self._parents[device_id] = fields.get(endpoint.parent[0])
        return device_id

    async def _key_of(self, collection: str, device_id: str) -> str:
        for doc in await self._documents(collection):
            if _document_id(doc) == device_id and doc.get("key"):
                return doc["key"]
        raise TerminalAPIError(f"no entity with id {device_id}", collection)

    @timed("update")
    async def update(self, collection: str, device_id: str, fields: dict[str, Any]) -> None:
        endpoint = endpoint_for(collection)
        payload = dict(fields)
        if endpoint.full_update:
            current = next(
                (d for d in await self._documents(collection) if _document_id(d) == device_id),
                None,
            )
            if current is None:
                raise TerminalAPIError(f"no entity with id {device_id}", collection)
            payload = {**current, **fields}
        key = None
        if endpoint.keyed:
            key = await self._key_of(collection, device_id)
            payload = {k: v for k, v in payload.items() if k not in ("key", "site_id")}
        parent = self._parent_of(endpoint, payload, device_id)
        await self._request(
            "PUT", self._url(endpoint, parent=parent, device_id=device_id, key=key), payload,
            collection, key or logical_name_of(collection, payload),
        )
        self._raw.clear()

    @timed("delete")
    async def delete(self, collection: str, device_id: str) -> None:
        endpoint = endpoint_for(collection)
        parent = self._parent_of(endpoint, {}, device_id)
        url = self._url(endpoint, parent=parent, device_id=device_id)
        if endpoint.delete_fields is not None:
            await self._request("PUT", url, dict(endpoint.delete_fields), collection)
        else:
            await self._request("DELETE", url, collection=collection)
        self._raw.clear()
        self._parents.pop(device_id, None)
