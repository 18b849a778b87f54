"""Business insights and SMS copy from the Gemini text API.

Callers always get usable text back: every failure path returns a fixed
fallback instead of raising.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

import dashboard_config as cfg
from models import DashboardStats

logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = [
    "Optimize marketing spend to reach more customers.",
    "Review shipping costs to improve net margin.",
    "Run a loyalty campaign for your existing customer base.",
]
FALLBACK_SMS_TEMPLATE = "Special offer just for you! Visit our store today."
EMPTY_SMS_TEMPLATE = "Thank you for shopping with us!"
MAX_INSIGHTS = 3


def insights_prompt(stats: DashboardStats) -> str:
    return (
        "Analyze these business stats:\n"
        f"Net Profit: ৳{stats.net_profit}\n"
        f"Gross Profit: ৳{stats.gross_profit}\n"
        f"Total Expenses: ৳{stats.total_expenses}\n"
        f"Total Orders: {stats.orders}\n"
        f"Total Customers: {stats.customers}\n\n"
        "Provide 3 short, actionable business insights to improve performance. "
        'Respond as JSON: {"insights": ["..."]}'
    )


def sms_template_prompt(purpose: str, business_name: str) -> str:
    return (
        f'Create a professional and short SMS message for a business named "{business_name}". '
        f'The purpose is: "{purpose}". '
        "Keep it under 160 characters. Return only the message text."
    )


def parse_insights(text: Optional[str]) -> List[str]:
    """Read `{"insights": [...]}`, a bare JSON list, or one insight per line."""
    text = (text or '').strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError:
        data = None
    if isinstance(data, dict):
        data = data.get('insights')
    if isinstance(data, list):
        return [str(item).strip() for item in data if str(item).strip()]
    lines = []
    for line in text.splitlines():
        line = line.strip().lstrip('-*•').strip()
        # drop list numbering such as "1." or "2)"
        head, sep, rest = line.partition(' ')
        if sep and head.rstrip('.)').isdigit():
            line = rest.strip()
        if line:
            lines.append(line)
    return lines


def _response_text(body: Any) -> str:
    try:
        parts = body['candidates'][0]['content']['parts']
    except (KeyError, IndexError, TypeError):
        return ''
    return ''.join(p.get('text', '') for p in parts if isinstance(p, dict))


class InsightsClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else cfg.GEMINI_API_KEY
        self.model = model or cfg.GEMINI_MODEL
        self.base_url = (base_url or cfg.GEMINI_API_BASE).rstrip('/')
        self.timeout = timeout or cfg.HTTP_TIMEOUT

    async def _generate(self, prompt: str, generation_config: Dict[str, Any]) -> str:
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY is not set")
        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = {
            'contents': [{'parts': [{'text': prompt}]}],
            'generationConfig': generation_config,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, params={'key': self.api_key}, json=body)
        resp.raise_for_status()
        return _response_text(resp.json())

    async def generate_insights(self, stats: DashboardStats) -> List[str]:
        try:
            text = await self._generate(insights_prompt(stats), {'responseMimeType': 'application/json'})
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            logger.error("Error fetching insights: %s", exc)
            return list(FALLBACK_INSIGHTS)
        insights = parse_insights(text)[:MAX_INSIGHTS]
        return insights or list(FALLBACK_INSIGHTS)

    async def generate_sms_template(self, purpose: str, business_name: Optional[str] = None) -> str:
        try:
            text = await self._generate(
                sms_template_prompt(purpose, business_name or cfg.BUSINESS_NAME),
                {'temperature': 0.7},
            )
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            logger.error("Error generating SMS template: %s", exc)
            return FALLBACK_SMS_TEMPLATE
        return text.strip() or EMPTY_SMS_TEMPLATE
