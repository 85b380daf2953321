"""Outbound reply port: chat providers selected per tenant configuration."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import httpx

from driverchat.core.config import Settings, get_settings
from driverchat.core.logging import logger
from driverchat.models.fleet import MessagingProviderType, TenantRecord
from driverchat.services.fleet_state import FleetStateStore, fleet_state_store
from driverchat.services.phone_identity import digits_only


class MessagingError(Exception):
    """Raised when a provider rejects or fails to deliver a message."""


class MessagingProvider(ABC):
    """Capability set the dispatcher relies on for replies."""

    name = "abstract"

    @abstractmethod
    async def send_text(self, phone: str, text: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send_image(self, phone: str, url: str, caption: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send_location(
        self,
        phone: str,
        latitude: float,
        longitude: float,
        title: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class LogOnlyProvider(MessagingProvider):
    """Writes replies to the log instead of a chat network."""

    name = MessagingProviderType.LOG.value

    async def send_text(self, phone: str, text: str) -> None:
        logger.info("Reply (log only)", phone=phone, text=text)

    async def send_image(self, phone: str, url: str, caption: Optional[str] = None) -> None:
        logger.info("Image reply (log only)", phone=phone, url=url, caption=caption)

    async def send_location(
        self,
        phone: str,
        latitude: float,
        longitude: float,
        title: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        logger.info("Location reply (log only)", phone=phone, latitude=latitude, longitude=longitude, title=title)


class ZapiProvider(MessagingProvider):
    """Z-API instance addressed by instance id and token in the URL path."""

    name = MessagingProviderType.ZAPI.value

    def __init__(
        self,
        instance_id: str,
        token: str,
        client_token: Optional[str] = None,
        base_url: str = "https://api.z-api.io/instances",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not instance_id or not token:
            raise MessagingError("Z-API instance id and token are required.")
        self.instance_id = instance_id
        self.token = token
        self.client_token = client_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{self.instance_id}/token/{self.token}/{endpoint}"
        headers = {"Client-Token": self.client_token} if self.client_token else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise MessagingError(f"Z-API {endpoint} request failed: {exc}") from exc
        if response.status_code >= 400:
            raise MessagingError(f"Z-API {endpoint} failed ({response.status_code}): {response.text[:400]}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            # plain-text acknowledgement
            return {"raw": response.text[:400]}

    async def send_text(self, phone: str, text: str) -> None:
        await self._post("send-text", {"phone": digits_only(phone), "message": text})

    async def send_image(self, phone: str, url: str, caption: Optional[str] = None) -> None:
        payload = {"phone": digits_only(phone), "image": url}
        if caption:
            payload["caption"] = caption
        await self._post("send-image", payload)

    async def send_location(
        self,
        phone: str,
        latitude: float,
        longitude: float,
        title: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        await self._post(
            "send-location",
            {
                "phone": digits_only(phone),
                "latitude": latitude,
                "longitude": longitude,
                "title": title or "Location",
                "address": address or "",
            },
        )


class SendPulseProvider(MessagingProvider):
    """SendPulse WhatsApp bot API with app-only OAuth client credentials."""

    name = MessagingProviderType.SENDPULSE.value

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        bot_id: str,
        base_url: str = "https://api.sendpulse.com",
        timeout: float = 15.0,
        country_code: str = "55",
        national_lengths: Tuple[int, ...] = (10, 11),
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not client_id or not client_secret:
            raise MessagingError("SendPulse client id and secret are required.")
        if not bot_id:
            raise MessagingError("SendPulse bot id is required.")
        self.client_id = client_id
        self.client_secret = client_secret
        self.bot_id = bot_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.country_code = country_code
        self.national_lengths = national_lengths
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _get_access_token(self) -> str:
        if self._token and self._token_expires_at:
            if datetime.now(timezone.utc) < self._token_expires_at:
                return self._token

        payload = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            async with self._client() as client:
                response = await client.post("/oauth/access_token", json=payload)
        except httpx.HTTPError as exc:
            raise MessagingError(f"SendPulse token request failed: {exc}") from exc
        if response.status_code >= 400:
            raise MessagingError(f"SendPulse token request failed ({response.status_code}): {response.text[:400]}")

        try:
            data = response.json()
            token = str(data["access_token"])
            expires_in = int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise MessagingError(f"SendPulse token response unreadable: {response.text[:400]}") from exc
        self._token = token
        self._token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in - 60)
        return self._token

    def _international(self, phone: str) -> str:
        clean = digits_only(phone)
        if len(clean) in self.national_lengths:
            clean = f"{self.country_code}{clean}"
        return clean

    async def _resolve_contact_id(self, client: httpx.AsyncClient, phone: str, headers: Dict[str, str]) -> Optional[str]:
        try:
            response = await client.post("/whatsapp/contacts", json={"phone": phone, "bot_id": self.bot_id}, headers=headers)
            if response.status_code < 400:
                contact_id = (response.json().get("data") or {}).get("id")
                if contact_id:
                    return str(contact_id)
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("SendPulse contact creation failed", error=str(exc), phone=phone)

        try:
            response = await client.get(
                "/whatsapp/contacts/getByPhone",
                params={"phone": phone, "bot_id": self.bot_id},
                headers=headers,
            )
            if response.status_code < 400:
                contact_id = (response.json().get("data") or {}).get("id")
                if contact_id:
                    return str(contact_id)
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("SendPulse contact lookup failed", error=str(exc), phone=phone)
        return None

    async def _send(self, phone: str, message: Dict[str, Any]) -> None:
        token = await self._get_access_token()
        headers = {"Authorization": f"Bearer {token}"}
        target = self._international(phone)
        try:
            async with self._client() as client:
                contact_id = await self._resolve_contact_id(client, target, headers)
                payload: Dict[str, Any] = {"bot_id": self.bot_id, "message": message}
                if contact_id:
                    payload["contact_id"] = contact_id
                else:
                    logger.warning("SendPulse contact id unresolved, sending by phone", phone=target)
                    payload["phone"] = target
                response = await client.post("/whatsapp/contacts/send", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise MessagingError(f"SendPulse send failed: {exc}") from exc
        if response.status_code >= 400:
            raise MessagingError(f"SendPulse send failed ({response.status_code}): {response.text[:400]}")

    async def send_text(self, phone: str, text: str) -> None:
        await self._send(phone, {"type": "text", "text": {"body": text}})

    async def send_image(self, phone: str, url: str, caption: Optional[str] = None) -> None:
        image: Dict[str, Any] = {"link": url}
        if caption:
            image["caption"] = caption
        await self._send(phone, {"type": "image", "image": image})

    async def send_location(
        self,
        phone: str,
        latitude: float,
        longitude: float,
        title: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        link = f"https://www.google.com/maps/search/?api=1&query={latitude},{longitude}"
        label = f"{title}: " if title else ""
        await self.send_text(phone, f"{label}{link}")


class MessagingGateway:
    """Builds one provider per tenant configuration and logs every send."""

    PINNED = ("pinned",)

    def __init__(self, store: FleetStateStore | None = None, settings: Settings | None = None):
        self.store = store or fleet_state_store
        self.settings = settings
        self._providers: Dict[str, Tuple[Tuple[Any, ...], MessagingProvider]] = {}

    def _settings(self) -> Settings:
        return self.settings or get_settings()

    def _provider_type(self, tenant: TenantRecord) -> MessagingProviderType:
        if tenant.config.messaging_provider:
            return tenant.config.messaging_provider
        raw = (self._settings().default_messaging_provider or "").strip().lower()
        try:
            return MessagingProviderType(raw)
        except ValueError:
            logger.warning("Unknown default messaging provider, using log only", provider=raw)
            return MessagingProviderType.LOG

    def _config_key(self, tenant: TenantRecord) -> Tuple[Any, ...]:
        settings = self._settings()
        config = tenant.config
        kind = self._provider_type(tenant)
        if kind == MessagingProviderType.ZAPI:
            return (
                kind,
                config.zapi_instance_id or settings.zapi_instance_id,
                config.zapi_token or settings.zapi_token,
                config.zapi_client_token or settings.zapi_client_token,
            )
        if kind == MessagingProviderType.SENDPULSE:
            return (
                kind,
                settings.sendpulse_client_id,
                settings.sendpulse_client_secret,
                config.sendpulse_bot_id or settings.sendpulse_bot_id,
            )
        return (kind,)

    def _build(self, tenant_id: str, key: Tuple[Any, ...]) -> MessagingProvider:
        settings = self._settings()
        kind = key[0]
        try:
            if kind == MessagingProviderType.ZAPI:
                _, instance_id, token, client_token = key
                return ZapiProvider(
                    instance_id,
                    token,
                    client_token=client_token or None,
                    base_url=settings.zapi_base_url,
                    timeout=settings.outbound_timeout_seconds,
                )
            if kind == MessagingProviderType.SENDPULSE:
                _, client_id, client_secret, bot_id = key
                national = settings.national_number_length()
                return SendPulseProvider(
                    client_id,
                    client_secret,
                    bot_id,
                    base_url=settings.sendpulse_base_url,
                    timeout=settings.outbound_timeout_seconds,
                    country_code=settings.phone_country_code,
                    national_lengths=(national - 1, national),
                )
        except MessagingError as exc:
            logger.warning(
                "Messaging provider not configured, replies will only be logged",
                tenant_id=tenant_id,
                provider=kind.value,
                error=str(exc),
            )
        return LogOnlyProvider()

    def provider_for(self, tenant: TenantRecord) -> MessagingProvider:
        cached = self._providers.get(tenant.tenant_id)
        if cached is not None and cached[0] == self.PINNED:
            return cached[1]
        key = self._config_key(tenant)
        if cached is not None and cached[0] == key:
            return cached[1]
        provider = self._build(tenant.tenant_id, key)
        self._providers[tenant.tenant_id] = (key, provider)
        return provider

    def register(self, tenant_id: str, provider: MessagingProvider) -> None:
        """Pin a provider instance for a tenant, bypassing configuration."""
        self._providers[tenant_id] = (self.PINNED, provider)

    async def _deliver(self, tenant: TenantRecord, phone: str, channel: str, payload: Dict[str, Any], call) -> bool:
        provider = self.provider_for(tenant)
        recipient = digits_only(phone)
        try:
            await call(provider, recipient)
        except Exception as exc:
            logger.warning(
                "Outbound message failed",
                tenant_id=tenant.tenant_id,
                provider=provider.name,
                channel=channel,
                error=str(exc),
            )
            self.store.add_outbound_message(
                tenant.tenant_id,
                channel=f"{provider.name}:{channel}",
                recipient=recipient,
                payload={**payload, "error": str(exc)},
                status="failed",
            )
            return False

        self.store.add_outbound_message(
            tenant.tenant_id,
            channel=f"{provider.name}:{channel}",
            recipient=recipient,
            payload=payload,
            status="sent",
        )
        return True

    async def send_text(self, tenant: TenantRecord, phone: str, text: str) -> bool:
        return await self._deliver(
            tenant,
            phone,
            "text",
            {"text": text},
            lambda provider, recipient: provider.send_text(recipient, text),
        )

    async def send_image(self, tenant: TenantRecord, phone: str, url: str, caption: Optional[str] = None) -> bool:
        return await self._deliver(
            tenant,
            phone,
            "image",
            {"url": url, "caption": caption},
            lambda provider, recipient: provider.send_image(recipient, url, caption),
        )

    async def send_location(
        self,
        tenant: TenantRecord,
        phone: str,
        latitude: float,
        longitude: float,
        title: Optional[str] = None,
        address: Optional[str] = None,
    ) -> bool:
        return await self._deliver(
            tenant,
            phone,
            "location",
            {"latitude": latitude, "longitude": longitude, "title": title, "address": address},
            lambda provider, recipient: provider.send_location(recipient, latitude, longitude, title, address),
        )


messaging_gateway = MessagingGateway()
