"""Webhook Ingestion Gateway

Third-party events (form tools, payment processors, CRMs) arrive at
``/ingest/{slug}``. The slug selects a WebhookConfig naming a flow, an
entry edge, a source, and an entity mapping such as::

    {"name": "$.customer.name", "email": "$.customer.email", "entity_type": "lead"}

Mapping values starting with ``$`` are paths into the payload; anything
else is a static value. The config's source picks an adapter (see
stitch.adapters) that verifies the signature and extracts the entity
before the mapping fills any gaps. Ingestion is lenient: a path that does
not resolve yields None and the entity is still created, because a
dropped lead is worse than an incomplete record.

Every delivery for a known slug is written to the event log before it is
checked, so rejected attempts (inactive hook, bad signature) leave a
failed event behind.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .adapters import WebhookAdapter, get_adapter
from .errors import ErrorKind, NotFoundError, Result, StitchError, UnauthorizedError, ValidationError
from .logging_config import get_ingest_logger
from .runner import EdgeWalker
from .store import EntityStore, FlowStore, WebhookStore

logger = get_ingest_logger()


class IngestionGateway:
    """Maps inbound webhook events to entities and runs."""

    def __init__(
        self,
        engine: EdgeWalker,
        webhooks: Optional[WebhookStore] = None,
        entities: Optional[EntityStore] = None,
        flows: Optional[FlowStore] = None,
    ):
        self.engine = engine
        self.webhooks = webhooks or WebhookStore()
        self.entities = entities or EntityStore()
        self.flows = flows or engine.flows

    async def ingest(
        self,
        slug: str,
        raw_body: bytes,
        payload: Any,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Result:
        """Process one inbound event.

        Returns:
            Result with {"entity_id", "run_id", "webhook_event_id", "created"}.
            NOT_FOUND for an unknown or inactive slug, UNAUTHORIZED for a
            missing or bad signature, VALIDATION when the config points at a
            missing edge.
        """
        headers = {key.lower(): value for key, value in (headers or {}).items()}
        try:
            config = await self.webhooks.get_config(slug)
        except StitchError as e:
            return Result.from_error(e)

        adapter = get_adapter(config.source)
        event_id = await self.webhooks.log_event(config.id, payload)
        logger.info(
            f"[Ingest] slug={slug} source={adapter.source} event={event_id} "
            f"type={adapter.event_type(payload)}"
        )

        try:
            self._authorize(config, adapter, raw_body, headers)
            await self.webhooks.update_event(event_id, "processing")
            result = await self._process(config, adapter, payload, event_id)
        except StitchError as e:
            logger.error(f"[Ingest] event={event_id} failed: {e.message}")
            await self.webhooks.update_event(event_id, "failed", error=e.message)
            return Result.from_error(e)

        if not result.ok:
            await self.webhooks.update_event(
                event_id, "failed",
                entity_id=result.value.get("entity_id") if result.value else None,
                error=result.message,
            )
            return result

        await self.webhooks.update_event(
            event_id, "completed",
            entity_id=result.value["entity_id"],
            run_id=result.value["run_id"],
        )
        return result

    def _authorize(
        self,
        config,
        adapter: WebhookAdapter,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> None:
        if not config.is_active:
            raise NotFoundError(f"Webhook not found: {config.slug}")
        if config.require_signature and not adapter.signature(headers):
            logger.warning(f"[Ingest] Unsigned event for slug={config.slug}, signature required")
            raise UnauthorizedError("Missing webhook signature")
        if not adapter.verify(raw_body, headers, config.secret):
            logger.warning(f"[Ingest] Signature mismatch for slug={config.slug} source={adapter.source}")
            raise UnauthorizedError("Invalid webhook signature")

    async def _process(self, config, adapter: WebhookAdapter, payload: Any, event_id: str) -> Result:
        _, graph = await self.flows.get_current(config.workflow_id)
        try:
            entry_edge = graph.edge(config.entry_edge_id)
        except NotFoundError:
            raise ValidationError(
                f"Webhook {config.slug}: entry edge {config.entry_edge_id} not in flow {config.workflow_id}"
            ) from None

        fields = adapter.map_entity(payload, config.entity_mapping)
        metadata = fields.pop("metadata")
        metadata.setdefault("source", config.source)

        entity, created = await self.entities.find_or_create_by_email(
            config.canvas_id, fields["email"],
            name=fields["name"],
            avatar_url=fields["avatar_url"],
            entity_type=fields["entity_type"],
            metadata=metadata,
        )
        logger.info(f"[Ingest] entity={entity.id} created={created} email={fields['email']}")

        if not created:
            def _refresh(e) -> None:
                for key in ("name", "avatar_url"):
                    if fields[key] is not None:
                        setattr(e, key, fields[key])
                e.metadata = {**e.metadata, **metadata}

            await self.entities.mutate(entity.id, _refresh)

        entity = await self.engine.mover.place_on_edge(entity.id, entry_edge.id, entry_edge.target)
        if entity.is_completed:
            logger.info(f"[Ingest] entity={entity.id} already completed; position left unchanged")

        trigger = {
            "type": "webhook",
            "source": config.source,
            "event_type": adapter.event_type(payload),
            "event_id": event_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        started = await self.engine.start_run(
            config.workflow_id,
            input=payload,
            entity_id=entity.id,
            trigger=trigger,
            entry_node_ids=[entry_edge.target],
        )
        if not started.ok:
            return Result(
                ok=False,
                value={"entity_id": entity.id},
                error_kind=started.error_kind or ErrorKind.VALIDATION,
                message=started.message,
            )
        return Result.success({
            "entity_id": entity.id,
            "run_id": started.value["run_id"],
            "webhook_event_id": event_id,
            "created": created,
        })
