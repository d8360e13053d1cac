import logging
import re
from datetime import UTC, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Berlin"

# First match wins. PRTG renders dates day-first, so the European layouts
# must be tried before the US month-first ones.
DATETIME_LAYOUTS: tuple[str, ...] = (
    "%d.%m.%Y %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%d %b %Y %H:%M:%S",
    "%d %b %Y %I:%M:%S %p",
    "%b %d, %Y %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
    "%Y-%m-%d",
    "%d.%m.%Y",
    "%m/%d/%Y",
)

RANGE_SEPARATOR = " - "

# leading date of "01.01.2023 23:00:00" or "2023-01-01T23:00:00", with its separator
DATE_PREFIX = re.compile(r"^(?P<date>[^\sT]+)(?P<sep>[T ])")


class DatetimeParseError(ValueError):
    def __init__(self, text: str, cause: Exception | None = None):
        self.text = text
        self.cause = cause
        super().__init__(f"failed to parse datetime '{text}': {cause}")


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Look up an IANA zone; empty means the PRTG default, unknown falls back to UTC."""
    name = (name or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        logger.warning("Invalid timezone %r, falling back to UTC: %s", name, exc)
        return ZoneInfo("UTC")


class DatetimeNormalizer:
    """Turns PRTG's local-time strings into UTC instants.

    Inputs are either a single timestamp or an averaged range such as
    ``"06.03.2025 15:11:00 - 15:12:00"``. For ranges the end governs; an end
    that falls before its start is moved to the next day.
    """

    def __init__(self, timezone: str | tzinfo | None = None):
        if isinstance(timezone, tzinfo):
            self.timezone = timezone
        else:
            self.timezone = resolve_timezone(timezone)

    def parse(self, text: str) -> tuple[datetime, str]:
        """Return ``(utc_instant, unix_seconds)`` or raise :class:`DatetimeParseError`."""
        value = (text or "").strip()
        if not value:
            raise DatetimeParseError(text, ValueError("empty input"))

        if RANGE_SEPARATOR in value:
            instant = self._parse_range(value)
        else:
            instant = self._localize(self._parse_layouts(value))

        utc_instant = instant.astimezone(UTC)
        return utc_instant, str(int(utc_instant.timestamp()))

    def _parse_range(self, value: str) -> datetime:
        start_text, _, end_text = value.partition(RANGE_SEPARATOR)
        start_text = start_text.strip()
        end_text = end_text.strip()

        start_prefix = DATE_PREFIX.match(start_text)
        if start_prefix is not None and DATE_PREFIX.match(end_text) is None:
            end_text = f"{start_prefix['date']}{start_prefix['sep']}{end_text}"

        end = self._parse_layouts(end_text)
        try:
            start = self._parse_layouts(start_text)
        except DatetimeParseError:
            return self._localize(end)

        if _comparable(end, self.timezone) < _comparable(start, self.timezone):
            end = end + timedelta(days=1)
        return self._localize(end)

    def _parse_layouts(self, value: str) -> datetime:
        last_error: Exception | None = None
        for layout in DATETIME_LAYOUTS:
            try:
                return datetime.strptime(value, layout)
            except ValueError as exc:
                last_error = exc
        raise DatetimeParseError(value, last_error)

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.timezone)
        return value


def _comparable(value: datetime, zone: tzinfo) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=zone)
