"""
Configuration for the report service - settings, logging and saved reports.
"""
import os
import json
import re
import uuid
import logging
from typing import Optional, Dict, List, Any
from datetime import datetime

from offer_analytics.exceptions import ConfigurationError, NotFoundError

logger = logging.getLogger(__name__)

_REPORT_ID_PATTERN = re.compile(r'^[A-Za-z0-9-]+$')


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}", code='invalid_setting')


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}", code='invalid_setting')


class AppSettings:
    """Runtime settings, read from OFFER_ANALYTICS_* environment variables."""

    def __init__(
        self,
        api_url: str = "http://localhost:5000/api",
        api_token: Optional[str] = None,
        api_timeout: float = 30.0,
        config_dir: str = "/app/config",
        log_level: str = "INFO",
        cache_enabled: bool = True,
        cache_max_entries: int = 0,
        cache_ttl_seconds: int = 300,
        detail_page_size: int = 25,
        search_debounce_ms: int = 300,
        session_idle_seconds: int = 3600,
        max_sessions: int = 500
    ):
        if detail_page_size < 1:
            raise ConfigurationError("Detail page size must be at least 1", code='invalid_setting')
        self.api_url = api_url
        self.api_token = api_token
        self.api_timeout = api_timeout
        self.config_dir = config_dir
        self.log_level = log_level.upper()
        self.cache_enabled = cache_enabled
        self.cache_max_entries = cache_max_entries
        self.cache_ttl_seconds = cache_ttl_seconds
        self.detail_page_size = detail_page_size
        self.search_debounce_ms = search_debounce_ms
        self.session_idle_seconds = session_idle_seconds
        self.max_sessions = max_sessions

    @property
    def cache_db_path(self) -> str:
        return os.path.join(self.config_dir, "query_cache.db")

    @property
    def reports_dir(self) -> str:
        return os.path.join(self.config_dir, "reports")

    @classmethod
    def from_env(cls) -> 'AppSettings':
        return cls(
            api_url=os.environ.get("OFFER_ANALYTICS_API_URL", "http://localhost:5000/api"),
            api_token=os.environ.get("OFFER_ANALYTICS_API_TOKEN") or None,
            api_timeout=_env_float("OFFER_ANALYTICS_API_TIMEOUT", 30.0),
            config_dir=os.environ.get("OFFER_ANALYTICS_CONFIG_DIR", "/app/config"),
            log_level=os.environ.get("OFFER_ANALYTICS_LOG_LEVEL", "INFO"),
            cache_enabled=_env_bool("OFFER_ANALYTICS_CACHE_ENABLED", True),
            cache_max_entries=_env_int("OFFER_ANALYTICS_CACHE_MAX_ENTRIES", 0),
            cache_ttl_seconds=_env_int("OFFER_ANALYTICS_CACHE_TTL_SECONDS", 300),
            detail_page_size=_env_int("OFFER_ANALYTICS_DETAIL_PAGE_SIZE", 25),
            search_debounce_ms=_env_int("OFFER_ANALYTICS_SEARCH_DEBOUNCE_MS", 300),
            session_idle_seconds=_env_int("OFFER_ANALYTICS_SESSION_IDLE_SECONDS", 3600),
            max_sessions=_env_int("OFFER_ANALYTICS_MAX_SESSIONS", 500)
        )

    def to_dict(self) -> Dict:
        # Token is never echoed back
        return {
            'api_url': self.api_url,
            'api_token_set': bool(self.api_token),
            'api_timeout': self.api_timeout,
            'config_dir': self.config_dir,
            'log_level': self.log_level,
            'cache_enabled': self.cache_enabled,
            'cache_max_entries': self.cache_max_entries,
            'cache_ttl_seconds': self.cache_ttl_seconds,
            'detail_page_size': self.detail_page_size,
            'search_debounce_ms': self.search_debounce_ms,
            'session_idle_seconds': self.session_idle_seconds,
            'max_sessions': self.max_sessions
        }


def configure_logging(level: str = "INFO") -> None:
    """Root handler for the service; safe to call more than once."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    logging.getLogger("offer_analytics").setLevel(getattr(logging, level.upper(), logging.INFO))


class ReportConfigRegistry:
    """Registry for saved report configurations (one JSON file per report)."""

    def __init__(self, reports_dir: str):
        self.reports_dir = reports_dir
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        os.makedirs(self.reports_dir, exist_ok=True)

    def _get_report_path(self, report_id: str) -> str:
        """Get path to report configuration file."""
        if not _REPORT_ID_PATTERN.match(report_id):
            raise NotFoundError(f"Report {report_id} not found", code='report_not_found')
        return os.path.join(self.reports_dir, f"report_{report_id}.json")

    def _save_report(self, report_id: str, report: Dict) -> None:
        with open(self._get_report_path(report_id), 'w') as f:
            json.dump(report, f, indent=2)

    def list_reports(self) -> List[Dict]:
        """Get list of all saved reports, most recently updated first."""
        reports = []
        if not os.path.exists(self.reports_dir):
            return reports

        for filename in os.listdir(self.reports_dir):
            if filename.startswith("report_") and filename.endswith(".json"):
                report_id = filename[len("report_"):-len(".json")]
                report = self.get_report(report_id)
                if report:
                    reports.append(report)

        reports.sort(key=lambda x: x.get('updated_at', ''), reverse=True)
        return reports

    def get_report(self, report_id: str) -> Optional[Dict]:
        """Get saved report configuration by ID."""
        report_path = self._get_report_path(report_id)
        if not os.path.exists(report_path):
            return None

        try:
            with open(report_path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load saved report {report_id}: {e}")
            return None

    def create_report(self, name: str, config: Dict[str, Any], description: Optional[str] = None) -> Dict:
        """Save a new report configuration."""
        report_id = str(uuid.uuid4())
        now = datetime.utcnow().isoformat()

        report = {
            'id': report_id,
            'name': name,
            'description': description,
            **config,
            'created_at': now,
            'updated_at': now
        }

        self._save_report(report_id, report)
        logger.info(f"Saved report '{name}' ({report_id})")
        return report

    def update_report(
        self,
        report_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict]:
        """Update a saved report's name, description or selections."""
        report = self.get_report(report_id)
        if not report:
            return None

        if name is not None:
            report['name'] = name
        if description is not None:
            report['description'] = description
        if config is not None:
            report.update(config)

        report['updated_at'] = datetime.utcnow().isoformat()

        self._save_report(report_id, report)
        return report

    def delete_report(self, report_id: str) -> bool:
        """Delete a saved report."""
        report_path = self._get_report_path(report_id)
        if not os.path.exists(report_path):
            return False

        os.remove(report_path)
        logger.info(f"Deleted saved report {report_id}")
        return True


# Global instances
settings = AppSettings.from_env()
_report_registry: Optional[ReportConfigRegistry] = None


def get_report_registry() -> ReportConfigRegistry:
    """Get the global saved-report registry, creating it on first use."""
    global _report_registry
    if _report_registry is None:
        _report_registry = ReportConfigRegistry(settings.reports_dir)
    return _report_registry


def set_report_registry(registry: Optional[ReportConfigRegistry]) -> None:
    global _report_registry
    _report_registry = registry
