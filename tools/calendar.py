"""
Calendar tool for appointment availability.
Slots come from the organization's business hours minus meetings already
booked as activities on that day.
"""

from datetime import date as date_type, datetime, time, timedelta, timezone
from typing import List, Literal

from pydantic import BaseModel, Field

from models.errors import ToolError
from tools.base import Tool, ToolContext, ToolName, ToolResult


WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MORNING_SLOTS = ["08:00", "09:00", "10:00", "11:00"]
AFTERNOON_SLOTS = ["14:00", "15:00", "16:00", "17:00"]


class CheckAvailabilityArgs(BaseModel):
    date: date_type = Field(..., description="Data desejada (YYYY-MM-DD)")
    period: Literal["manha", "tarde", "qualquer"] = Field("qualquer", description="Período")


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


class CheckAvailabilityTool(Tool):
    name = ToolName.CHECK_AVAILABILITY
    description = "Verifica horários disponíveis para agendamento em uma data."
    args_model = CheckAvailabilityArgs

    def _candidate_slots(self, period: str) -> List[str]:
        slots = []
        if period in ("manha", "qualquer"):
            slots.extend(MORNING_SLOTS)
        if period in ("tarde", "qualquer"):
            slots.extend(AFTERNOON_SLOTS)
        return slots

    def execute(self, args: CheckAvailabilityArgs, context: ToolContext) -> ToolResult:
        tz = context.tz
        now = context.local_now()
        if args.date < now.date():
            raise ToolError(f"A data {args.date.isoformat()} já passou", ToolError.VALIDATION)

        slots = self._candidate_slots(args.period)

        hours = context.agent_config.business_hours.get(WEEKDAYS[args.date.weekday()])
        if context.agent_config.business_hours:
            if not hours or not hours.active or not hours.start or not hours.end:
                slots = []
            else:
                opens, closes = _parse_hhmm(hours.start), _parse_hhmm(hours.end)
                slots = [s for s in slots if opens <= _parse_hhmm(s) < closes]

        day_start = datetime.combine(args.date, time.min, tzinfo=tz)
        booked = context.crm.list_activities_between(
            context.organization_id,
            day_start.astimezone(timezone.utc),
            (day_start + timedelta(days=1)).astimezone(timezone.utc),
            activity_types=["meeting"]
        )
        taken = set()
        for activity in booked:
            start = activity.date
            if start.tzinfo is None:
                start = start.replace(tzinfo=timezone.utc)
            taken.add(start.astimezone(tz).strftime("%H:00"))

        free = [s for s in slots if s not in taken]
        if args.date == now.date():
            free = [s for s in free if _parse_hhmm(s) > now.time()]

        day = args.date.isoformat()
        return ToolResult(
            success=True,
            data={
                "date": day,
                "available": bool(free),
                "suggested_slots": free,
                "message": (
                    f"Temos horários disponíveis no dia {day}: {', '.join(free)}"
                    if free else f"Infelizmente não temos horários para {day}."
                )
            }
        )
