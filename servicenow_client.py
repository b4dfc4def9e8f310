import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

import requests

from incident_data import derive_filter_options, field_value

TABLE_API_PATH = "/api/now/table"
ACTIVE_STATES = ("1", "2", "3")

INCIDENT_FIELDS = (
    "sys_id,number,short_description,state,priority,assigned_to,"
    "location,opened_at,caller_id,urgency"
)
LOCATION_FIELDS = "sys_id,name,latitude,longitude,city,state,country,full_name"

INCIDENT_LIMIT = 2000
LOCATION_LIMIT = 1000
DEFAULT_TIMEOUT = 30

logger = logging.getLogger(__name__)


class ServiceNowAPIError(Exception):
    """Raised when the ServiceNow Table API cannot be reached or returns an error."""


def _build_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {
        "Accept": "application/json",
        "User-Agent": "incident-location-map",
    }
    if token:
        headers["X-UserToken"] = token
    return headers


def _resolve_base_url(base_url: Optional[str]) -> str:
    resolved = base_url or os.getenv("SERVICENOW_INSTANCE_URL")
    if not resolved:
        raise ServiceNowAPIError("SERVICENOW_INSTANCE_URL is not set")
    return resolved.rstrip("/")


def _resolve_auth(username: Optional[str], password: Optional[str]):
    user = username or os.getenv("SERVICENOW_USERNAME")
    secret = password or os.getenv("SERVICENOW_PASSWORD")
    if user and secret:
        return (user, secret)
    return None


def _error_message(response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])

    return f"HTTP {response.status_code}: {response.reason}"


def _get_table(
    table: str,
    params: Dict[str, str],
    *,
    base_url: Optional[str] = None,
    token: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    timeout: Optional[float] = None,
) -> List[Dict[str, Any]]:
    url = f"{_resolve_base_url(base_url)}{TABLE_API_PATH}/{table}"
    auth_token = token or os.getenv("SERVICENOW_TOKEN")
    request_timeout = timeout or float(os.getenv("SERVICENOW_TIMEOUT") or DEFAULT_TIMEOUT)

    try:
        response = requests.get(
            url,
            headers=_build_headers(auth_token),
            params=params,
            auth=_resolve_auth(username, password),
            timeout=request_timeout,
        )
    except requests.RequestException as exc:
        logger.error("Failed to reach ServiceNow table %s: %s", table, exc)
        raise ServiceNowAPIError(f"Failed to reach ServiceNow: {exc}") from exc

    if not response.ok:
        message = _error_message(response)
        logger.error("ServiceNow table %s returned an error: %s", table, message)
        raise ServiceNowAPIError(message)

    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        logger.error("ServiceNow table %s returned invalid JSON", table)
        raise ServiceNowAPIError("ServiceNow returned an invalid JSON response") from exc

    result = payload.get("result") if isinstance(payload, dict) else None
    if not isinstance(result, list):
        return []

    return [record for record in result if isinstance(record, dict)]


def build_incident_query(filters: Optional[Dict[str, Any]] = None) -> str:
    """Build the encoded query for active incidents.

    Supported filter keys are ``location``, ``search``, ``priority`` (list),
    ``state`` (list), ``date_from`` and ``date_to``. A state filter is
    narrowed to the active states and dropped when nothing active remains.
    """

    filters = filters or {}
    query = f"stateIN{','.join(ACTIVE_STATES)}"

    if filters.get("location"):
        query += f"^location={filters['location']}"

    search = filters.get("search")
    if search:
        query += f"^short_descriptionLIKE{search}^ORnumberLIKE{search}"

    priorities = [str(p) for p in filters.get("priority") or []]
    if priorities:
        query += f"^priorityIN{','.join(priorities)}"

    states = [str(s) for s in filters.get("state") or [] if str(s) in ACTIVE_STATES]
    if states:
        query += f"^stateIN{','.join(states)}"

    if filters.get("date_from"):
        query += f"^opened_at>={filters['date_from']}"
    if filters.get("date_to"):
        query += f"^opened_at<={filters['date_to']}"

    return query


def build_location_query(location_ids: Iterable[str]) -> str:
    return f"sys_idIN{','.join(location_ids)}^latitude!=NULL^longitude!=NULL"


def collect_location_ids(incidents: Iterable[Dict[str, Any]]) -> List[str]:
    """Return the unique location references of ``incidents`` in first-seen order."""

    seen = []
    for incident in incidents:
        location_id = field_value(incident.get("location"))
        if location_id and location_id not in seen:
            seen.append(location_id)
    return seen


def list_active_incidents(
    filters: Optional[Dict[str, Any]] = None, **connection
) -> List[Dict[str, Any]]:
    """Fetch up to 2000 active incidents in ``display_value=all`` mode.

    Args:
        filters: Optional filter mapping, see :func:`build_incident_query`.
        **connection: ``base_url``, ``token``, ``username``, ``password`` and
            ``timeout`` overrides. Each falls back to its ``SERVICENOW_*``
            environment variable.

    Raises:
        ServiceNowAPIError: When the request fails or returns a non-2xx status.
    """

    params = {
        "sysparm_display_value": "all",
        "sysparm_fields": INCIDENT_FIELDS,
        "sysparm_limit": str(INCIDENT_LIMIT),
        "sysparm_query": build_incident_query(filters),
    }
    incidents = _get_table("incident", params, **connection)
    logger.info("Loaded %d active incidents", len(incidents))
    return incidents


def list_active_incident_locations(
    incidents: Optional[List[Dict[str, Any]]] = None, **connection
) -> List[Dict[str, Any]]:
    """Fetch the locations referenced by active incidents that carry coordinates.

    When ``incidents`` is omitted the active incidents are fetched first.
    """

    if incidents is None:
        incidents = list_active_incidents(**connection)

    location_ids = collect_location_ids(incidents)
    if not location_ids:
        return []

    params = {
        "sysparm_display_value": "all",
        "sysparm_fields": LOCATION_FIELDS,
        "sysparm_query": build_location_query(location_ids),
        "sysparm_limit": str(LOCATION_LIMIT),
        "sysparm_order_by": "name",
    }
    locations = _get_table("cmn_location", params, **connection)
    logger.info("Loaded %d incident locations", len(locations))
    return locations


def get_filter_options(
    incidents: Optional[List[Dict[str, Any]]] = None, **connection
) -> Dict[str, List[str]]:
    """Return the priority and state values present in the active incidents.

    A failed fetch is logged and yields empty option lists.
    """

    if incidents is None:
        try:
            incidents = list_active_incidents(**connection)
        except ServiceNowAPIError as exc:
            logger.error("Error fetching filter options: %s", exc)
            return {"priorities": [], "states": []}

    return derive_filter_options(incidents)
