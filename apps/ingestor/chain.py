"""
Record chain builder: Ticket -> Client -> Booking -> Invoice.

For each candidate the ticket is persisted first, then the workflow
collaborator is asked to create the dependent records. When the workflow
errors, times out or reports failure, the fallback path creates them step by
step:

1. look up the client by (agency_id, email) and reuse it, or create it
2. create the booking
3. create a draft invoice with a single line item for the ticket total
4. link the ticket to whatever was created and mark it completed

Fallback steps fail independently. The ticket stays persisted with the
partial linkage and processing_status "failed"; errors are recorded on the
result rather than raised.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apps.ingestor.executor import RateLimitedExecutor
from utils.clock import Clock
from utils.db import EntityStores
from utils.errors import IngestionError, ValidationFailure, is_systemic_overload
from utils.schemas import AgencyContext, ChainResult, Outcome, TicketCandidate, WorkflowResult
from utils.workflow import AUTO_PROCESS_TICKET, WorkflowCollaborator

logger = logging.getLogger(__name__)


class RecordChainBuilder:
    def __init__(
        self,
        stores: EntityStores,
        workflow: WorkflowCollaborator,
        clock: Clock,
        *,
        executor: Optional[RateLimitedExecutor] = None,
        workflow_timeout: float = 60.0,
        step_delay: float = 1.0,
        placeholder_total: float = 100.0,
        default_currency: str = "USD",
        placeholder_phone: str = "+1-000-000-0000",
        email_domain: str = "passenger.com",
    ) -> None:
        self._stores = stores
        self._workflow = workflow
        self._clock = clock
        self._executor = executor
        self.workflow_timeout = workflow_timeout
        self.step_delay = step_delay
        self.placeholder_total = placeholder_total
        self.default_currency = default_currency
        self.placeholder_phone = placeholder_phone
        self.email_domain = email_domain
        # Serialises lookup-then-create so concurrent batches cannot duplicate a client.
        self._client_lock = asyncio.Lock()

    def _reference(self, prefix: str) -> str:
        return f"{prefix}-{int(self._clock.now() * 1000)}-{uuid.uuid4().hex[:5]}"

    def _today(self) -> str:
        return datetime.fromtimestamp(self._clock.now(), tz=timezone.utc).date().isoformat()

    def ticket_fields(
        self,
        candidate: TicketCandidate,
        agency: AgencyContext,
        source: str,
    ) -> dict[str, Any]:
        """Normalise a candidate into ticket fields, recording every default applied.

        Raises:
            ValidationFailure: the candidate names no passenger at all
        """
        email, email_defaulted = candidate.resolved_email(self.email_domain)
        if email is None:
            raise ValidationFailure("Ticket candidate has neither passenger name nor e-mail")

        defaulted: list[str] = []
        if email_defaulted:
            defaulted.append("passenger_email")

        name = candidate.passenger_name
        if not name:
            name = email.split("@", 1)[0]
            defaulted.append("passenger_name")

        total, total_default = candidate.resolved_total(self.placeholder_total)
        if total_default:
            defaulted.append(f"total_amount:{total_default}")

        fields = candidate.model_dump(by_alias=True, exclude_none=True)

        def pick(key: str, fallback: Callable[[], Any]) -> Any:
            value = fields.get(key)
            if value is None:
                defaulted.append(key)
                return fallback()
            return value

        fields.update(
            {
                "passenger_name": name,
                "passenger_email": email,
                "passenger_phone": pick("passenger_phone", lambda: self.placeholder_phone),
                "booking_reference": pick("booking_reference", lambda: self._reference("BKG")),
                "ticket_number": pick("ticket_number", lambda: self._reference("TKT")),
                "currency": pick("currency", lambda: self.default_currency),
                "total_amount": total,
                "gds_source": source,
                "status": "active",
                "processing_status": "pending",
                "agency_id": agency.agency_id,
                "agent_email": agency.agent_email,
                "defaulted_fields": defaulted,
            }
        )
        return fields

    async def build(
        self,
        candidate: TicketCandidate,
        agency: AgencyContext,
        source: str = "amadeus",
    ) -> ChainResult:
        try:
            fields = self.ticket_fields(candidate, agency, source)
        except ValidationFailure as e:
            logger.warning("Skipping ticket candidate", extra={"error": str(e)})
            return ChainResult(outcome=Outcome.FAILURE, errors=[str(e)])

        try:
            ticket = await self._stores.tickets.create(fields)
        except IngestionError as e:
            outcome = Outcome.ESCALATE if is_systemic_overload(e) else Outcome.FAILURE
            logger.error("Ticket creation failed", extra={"error": str(e)})
            return ChainResult(outcome=outcome, errors=[f"ticket: {e}"])

        logger.info(
            "Ticket created",
            extra={"ticket_id": ticket["id"], "ticket_number": ticket["ticket_number"]},
        )
        result = ChainResult(outcome=Outcome.SUCCESS, ticket_id=ticket["id"])

        response = await self._run_workflow(ticket)
        if response is not None:
            result.path = "workflow"
            result.client_id = response.client_id
            result.booking_id = response.booking_id
            result.invoice_id = response.invoice_id
            result.created_client = response.client_id is not None
            result.created_booking = response.booking_id is not None
            result.created_invoice = response.invoice_id is not None
            return result

        await self._clock.sleep(self.step_delay)
        return await self._fallback(ticket, agency, result)

    async def _run_workflow(self, ticket: dict[str, Any]) -> Optional[WorkflowResult]:
        """Returns the workflow result, or None when the fallback path must run."""

        async def execute() -> WorkflowResult:
            return await asyncio.wait_for(
                self._workflow.execute(AUTO_PROCESS_TICKET, ticket),
                timeout=self.workflow_timeout,
            )

        try:
            if self._executor is not None:
                response = await self._executor.submit(execute)
            else:
                response = await execute()
        except (IngestionError, asyncio.TimeoutError) as e:
            logger.warning(
                "Workflow execution failed, using manual creation",
                extra={"ticket_id": ticket["id"], "error": str(e) or type(e).__name__},
            )
            return None

        if not response.success:
            logger.warning(
                "Workflow reported failure, using manual creation",
                extra={"ticket_id": ticket["id"], "error": response.error},
            )
            return None

        return response

    async def _fallback(
        self,
        ticket: dict[str, Any],
        agency: AgencyContext,
        result: ChainResult,
    ) -> ChainResult:
        logger.info("Manual fallback for ticket", extra={"ticket_id": ticket["id"]})
        result.path = "fallback"

        steps: list[tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("client", lambda: self._link_client(ticket, agency)),
            ("booking", lambda: self._create_booking(ticket, agency, result.client_id)),
            ("invoice", lambda: self._create_invoice(ticket, agency, result.client_id)),
        ]

        for index, (name, step) in enumerate(steps):
            if index > 0:
                await self._clock.sleep(self.step_delay)
            try:
                value = await step()
            except IngestionError as e:
                result.errors.append(f"{name}: {e}")
                logger.error(
                    "Fallback step failed",
                    extra={"ticket_id": ticket["id"], "step": name, "error": str(e)},
                )
                if is_systemic_overload(e):
                    result.outcome = Outcome.ESCALATE
                    break
                continue

            if name == "client":
                result.client_id, result.created_client = value
            elif name == "booking":
                result.booking_id, result.created_booking = value, True
            else:
                result.invoice_id, result.created_invoice = value, True

        links = {
            key: getattr(result, key)
            for key in ("client_id", "booking_id", "invoice_id")
            if getattr(result, key) is not None
        }
        status = "failed" if result.errors else "completed"
        try:
            await self._stores.tickets.update(
                ticket["id"],
                {**links, "processing_status": status, "processing_errors": list(result.errors)},
            )
        except IngestionError as e:
            result.errors.append(f"ticket_update: {e}")
            logger.error(
                "Could not link ticket to created records",
                extra={"ticket_id": ticket["id"], "error": str(e)},
            )
            if is_systemic_overload(e):
                result.outcome = Outcome.ESCALATE

        return result

    async def _link_client(self, ticket: dict[str, Any], agency: AgencyContext) -> tuple[str, bool]:
        """Reuse the agency's client for this e-mail or create one. Returns (id, created)."""
        email = ticket["passenger_email"]
        today = self._today()

        async with self._client_lock:
            existing = await self._stores.clients.filter(
                {"email": email, "agency_id": agency.agency_id}, limit=1
            )
            if existing:
                client = existing[0]
                await self._stores.clients.update(
                    client["id"],
                    {
                        "total_bookings": (client.get("total_bookings") or 0) + 1,
                        "last_booking_date": today,
                    },
                )
                logger.info("Updated existing client", extra={"client_id": client["id"]})
                return client["id"], False

            client = await self._stores.clients.create(
                {
                    "name": ticket["passenger_name"],
                    "email": email,
                    "phone": ticket.get("passenger_phone") or "",
                    "agency_id": agency.agency_id,
                    "total_bookings": 1,
                    "last_booking_date": today,
                    "outstanding_balance": ticket["total_amount"],
                    "documents": [],
                    "notes": f"Auto-created from ticket {ticket['ticket_number']}",
                }
            )
            logger.info("Created client", extra={"client_id": client["id"]})
            return client["id"], True

    async def _create_booking(
        self,
        ticket: dict[str, Any],
        agency: AgencyContext,
        client_id: Optional[str],
    ) -> str:
        booking = await self._stores.bookings.create(
            {
                "booking_reference": ticket["booking_reference"],
                "pnr": ticket.get("pnr"),
                "ticket_id": ticket["id"],
                "client_id": client_id,
                "client_name": ticket["passenger_name"],
                "client_email": ticket["passenger_email"],
                "booking_type": "flight",
                "status": "confirmed",
                "total_amount": ticket["total_amount"],
                "currency": ticket["currency"],
                "agency_id": agency.agency_id,
                "agent_email": agency.agent_email,
            }
        )
        return booking["id"]

    async def _create_invoice(
        self,
        ticket: dict[str, Any],
        agency: AgencyContext,
        client_id: Optional[str],
    ) -> str:
        total = ticket["total_amount"]
        invoice = await self._stores.invoices.create(
            {
                "invoice_number": self._reference("INV"),
                "ticket_id": ticket["id"],
                "client_id": client_id,
                "client_name": ticket["passenger_name"],
                "client_email": ticket["passenger_email"],
                "total_amount": total,
                "balance_due": total,
                "currency": ticket["currency"],
                "status": "draft",
                "agency_id": agency.agency_id,
                "agent_email": agency.agent_email,
                "items": [
                    {
                        "description": f"Flight Ticket - {ticket['ticket_number']}",
                        "quantity": 1,
                        "unit_price": total,
                        "total": total,
                    }
                ],
            }
        )
        return invoice["id"]
