"""
HTTP client for the reporting backend.

Thin wrapper around a requests.Session: builds URLs, serializes booleans as
"true"/"false", attaches the bearer token, and turns transport or HTTP failures
into BackendError / NotFoundError. Payloads are returned as parsed JSON; shaping
happens in the services that consume them.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional

import requests

from offer_analytics.exceptions import BackendError, NotFoundError
from offer_analytics.models.schemas import Domain, DomainList, FilterSuggestion

logger = logging.getLogger(__name__)


def serialize_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Wire form of query params: booleans as 'true'/'false', None dropped."""
    serialized = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            serialized[key] = 'true' if value else 'false'
        else:
            serialized[key] = value
    return serialized


class AnalyticsApiClient:
    """Client for the analytics reporting API."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(
                url,
                params=serialize_params(params),
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Request to {path} failed: {e}")
            raise BackendError(f"Reporting backend unreachable: {str(e)}", code='network_error')

        if response.status_code == 404:
            logger.warning(f"Not found: {path}")
            raise NotFoundError(f"Resource not found: {path}", code='not_found')

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            message = self._error_message(response) or str(e)
            logger.error(f"Request to {path} returned {response.status_code}: {message}")
            raise BackendError(message, status_code=response.status_code, code='http_error')

        try:
            payload = response.json()
        except ValueError:
            logger.error(f"Invalid JSON from {path}")
            raise BackendError(f"Invalid JSON from reporting backend ({path})", code='invalid_json')

        if not isinstance(payload, dict):
            return {'data': payload}
        return payload

    @staticmethod
    def _error_message(response: requests.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get('message') or body.get('error')
        return None

    # =====================
    # Analytics
    # =====================

    def get_analytics_report(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """GET /analytics/report -> {data: [...], isHierarchical: bool}"""
        logger.info(f"Fetching analytics report (groupBy={params.get('groupBy', 'date')})")
        return self._get('/analytics/report', params)

    def get_analytics_detail(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """GET /analytics/detail -> {data: [...], hasMore?: bool}"""
        return self._get('/analytics/detail', params)

    def get_visitor_detail(self, visitor_id: str, dkey: Optional[str] = None) -> Dict[str, Any]:
        return self._get(f'/analytics/visitor/{visitor_id}', {'dkey': dkey})

    def get_action_detail(self, action_id: str, dkey: Optional[str] = None) -> Dict[str, Any]:
        return self._get(f'/analytics/action/{action_id}', {'dkey': dkey})

    # =====================
    # Tenants and filter values
    # =====================

    def get_domains(self) -> DomainList:
        payload = self._get('/domains')
        domains = [
            Domain(dkey=str(item['dkey']), name=str(item.get('name') or item['dkey']))
            for item in payload.get('data') or []
            if isinstance(item, dict) and item.get('dkey')
        ]
        default = payload.get('defaultOffer')
        default_offer = None
        if isinstance(default, dict) and default.get('dkey'):
            default_offer = Domain(dkey=str(default['dkey']), name=str(default.get('name') or default['dkey']))
        return DomainList(domains=domains, default_offer=default_offer)

    def get_approximate(self, query: str, filter_type: str, dkey: Optional[str] = None) -> List[FilterSuggestion]:
        """Filter value suggestions for a partially typed value."""
        payload = self._get('/approximate', {'query': query, 'type': filter_type, 'dkey': dkey})
        suggestions = []
        for item in payload.get('data') or []:
            if isinstance(item, dict):
                label = item.get('label') or item.get('name') or item.get('id')
                if label is None:
                    continue
                item_id = item.get('id')
                suggestions.append(FilterSuggestion(id=None if item_id is None else str(item_id), label=str(label)))
            elif item is not None:
                suggestions.append(FilterSuggestion(label=str(item)))
        return suggestions
