"""
calls/services.py

Bolna voice-agent integration service.

  Update prompt : PATCH {BOLNA_API_URL}/agent/{agent_id}
  Place call    : POST  {BOLNA_API_URL}/call
  Auth          : Authorization: Bearer {BOLNA_API_KEY}

The agent's system prompt is replaced before every dial so a single agent
serves screening, callback, follow-up and scheduling calls.
"""

import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

# Ordered list of field names Bolna has used for the call-session identifier.
RUN_ID_KEYS = ("run_id", "execution_id", "call_id", "callId", "id")


# ── Custom exception ───────────────────────────────────────────────────────────

class BolnaError(Exception):
    """Raised when the Bolna API returns an error or an unexpected response."""


# ── Service ────────────────────────────────────────────────────────────────────

class BolnaService:
    """
    Thin wrapper around the Bolna outbound-call API.
    """

    def __init__(self):
        self.api_key = settings.BOLNA_API_KEY
        self.agent_id = settings.BOLNA_AGENT_ID
        self.from_number = settings.BOLNA_FROM_NUMBER
        self.base_url = (settings.BOLNA_API_URL or "").rstrip("/")

    # ── Public API ─────────────────────────────────────────────────────────────

    def place_call(self, phone: str, prompt: str) -> str:
        """
        Point the agent at ``prompt`` and dial ``phone``.

        Args:
            phone : recipient in canonical "+<country><number>" form
            prompt: full system prompt for this call

        Returns:
            The provider's run id for the new call.

        Raises:
            BolnaError: on configuration, network or API failure, or when the
                        response carries no run id.
        """
        if not self.api_key:
            raise BolnaError("BOLNA_API_KEY is not configured.")
        if not self.agent_id:
            raise BolnaError("BOLNA_AGENT_ID is not configured.")
        if not phone:
            raise BolnaError("No phone number to dial.")
        if not phone.startswith("+"):
            phone = "+" + "".join(ch for ch in phone if ch.isdigit())

        self._request(
            "patch",
            f"/agent/{self.agent_id}",
            {"agent_prompts": {"task_1": {"system_prompt": prompt}}},
        )

        payload = {
            "agent_id": self.agent_id,
            "recipient_phone_number": phone,
        }
        if self.from_number:
            payload["from_phone_number"] = self.from_number

        logger.info("Initiating Bolna call: to=%s", phone)

        data = self._request("post", "/call", payload)
        run_id = self._extract_run_id(data)
        if not run_id:
            raise BolnaError(f"Bolna call response carried no run id: {str(data)[:300]}")

        logger.info("Bolna call initiated: to=%s run_id=%s", phone, run_id)
        return run_id

    # ── Internal helpers ───────────────────────────────────────────────────────

    def _request(self, method: str, path: str, payload: dict) -> dict:
        """Execute a JSON request against the Bolna API and return the parsed body."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(method, url, json=payload, headers=headers, timeout=30)
        except requests.RequestException as exc:
            raise BolnaError(f"Network error calling Bolna: {exc}") from exc

        if not resp.ok:
            raise BolnaError(f"Bolna API error {resp.status_code}: {resp.text[:500]}")

        try:
            return resp.json()
        except ValueError as exc:
            raise BolnaError(f"Bolna returned non-JSON response: {resp.text[:200]}") from exc

    @staticmethod
    def _extract_run_id(data) -> str | None:
        if not isinstance(data, dict):
            return None
        for key in RUN_ID_KEYS:
            value = data.get(key)
            if value:
                return str(value)
        return None
