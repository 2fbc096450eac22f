# Offline agent backend that answers fleet questions with canned text, streamed word by word.
# Date: 2026-10-19
# Version: 0.1.0

import asyncio
import re
from typing import AsyncIterator, Optional
from uuid import uuid4

from fleet_gateway.core.exceptions import CancellationError
from fleet_gateway.services.agent_client import BaseAgentClient
from fleet_gateway.utils.aio import until_cancelled
from fleet_gateway.utils.logger import console

# Keyword groups are checked in order; the first group with a hit picks the answer.
CANNED_RESPONSES = [
    (("maintenance", "service"),
     "Based on your fleet data, I recommend scheduling preventive maintenance for high-mileage vehicles. "
     "Vehicle #1001 is due for an oil change in 2 days and Vehicle #1003 needs a brake inspection this week. "
     "Would you like me to create maintenance schedules for these vehicles?"),
    (("fuel", "efficiency"),
     "Fleet fuel efficiency improved by 8% this month. Route A averages 15.2 MPG and Route C 14.8 MPG, "
     "while Route B trails at 12.1 MPG. Eco-driving training could improve efficiency further."),
    (("route", "logistics"),
     "Consolidating downtown deliveries would cut total distance by about 15%. Moving heavy routes to "
     "off-peak hours and using Route D for northbound deliveries would save further time. "
     "Would you like a detailed route optimization plan?"),
    (("safety", "compliance"),
     "There were 2 minor incidents this month, down from 4. All vehicles are DOT compliant. Driver #247 "
     "had 3 hard braking events this week and Vehicle #1005 is due for a safety inspection in 5 days."),
    (("cost", "expense", "budget"),
     "Operating costs this month are $47,230, 3% under budget: fuel $28,500, maintenance $12,200, "
     "insurance $4,830 and other $1,700. Fuel efficiency gains saved $1,420 compared to last month."),
    (("hello", "hi", "help"),
     "Hello! I'm your Fleet Assistant. I can help with maintenance schedules, fuel efficiency, route "
     "planning, safety compliance and cost analysis. What would you like to look at today?"),
]

DEFAULT_RESPONSE = (
    "I can help with vehicle maintenance, fuel efficiency, route optimization, safety compliance and "
    "cost analysis. Could you tell me more about what you need? For example, ask about maintenance "
    "schedules, fuel costs, route planning or safety metrics."
)


def pick_response(message: str) -> str:
    lowered = message.lower()
    words = set(re.findall(r"[a-z0-9#]+", lowered))
    for keywords, response in CANNED_RESPONSES:
        # Short keywords must match whole words, "hi" would otherwise match "this"
        if any((k in words) if len(k) <= 3 else (k in lowered) for k in keywords):
            return response
    return DEFAULT_RESPONSE


class MockAgentClient(BaseAgentClient):
    """
    Stands in for the hosted agent during local development and demos.
    Sessions are just generated ids; nothing leaves the process.
    """
    name = "MOCK"

    def __init__(self, chunk_delay: float = 0.075):
        self._chunk_delay = chunk_delay

    async def create_session(self) -> str:
        session_id = f"mock-thread-{uuid4()}"
        console.info(f"Created new mock thread {session_id}")
        return session_id

    async def check_health(self) -> bool:
        return True

    async def stream_response(self, session_id: str, message: str,
                              cancel: Optional[asyncio.Event] = None) -> AsyncIterator[str]:
        console.info(f"Answering from the mock agent on thread {session_id}")
        try:
            for word in pick_response(message).split():
                await until_cancelled(asyncio.sleep(self._chunk_delay), cancel)
                yield word + " "
        except CancellationError:
            console.info("Streaming cancelled by client")
