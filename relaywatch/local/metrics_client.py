import logging
import requests
from dataclasses import dataclass
from typing import Dict, Iterable, Optional
import relaywatch.settings as default_settings
from relaywatch.local.errors import ScrapeError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScrapeSample:
    """Cumulative-since-worker-start byte counters read from one scrape."""
    upload_bytes_total: int = 0
    download_bytes_total: int = 0

    @property
    def total(self) -> int:
        return self.upload_bytes_total + self.download_bytes_total


def parse_counters(text: str, names: Iterable[str]) -> Dict[str, int]:
    """
    Extracts named samples from a line-oriented metrics exposition.

    A line matches only when its first whitespace-separated token is exactly
    one of `names`, so `conduit_bytes_uploaded_total` never matches
    `conduit_bytes_uploaded`. Labelled samples (`name{...}`) don't match either.

    :param text: The response body.
    :param names: The sample names to look for.
    :return dict: Every requested name mapped to its value; missing or
                  unparseable samples are reported as 0.
    """
    wanted = set(names)
    values = {name: 0 for name in wanted}

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 2 or parts[0] not in wanted:
            continue
        try:
            values[parts[0]] = int(float(parts[1]))
        except (ValueError, OverflowError):
            log.debug(f"Ignoring unparseable sample value in line: {line!r}")
    return values


class MetricsScraper:
    """
    Reads the worker's upload/download counters over HTTP.
    Stateless between calls apart from the reused HTTP session.
    """

    def __init__(
        self,
        url: str,
        timeout: float = default_settings.SCRAPE_TIMEOUT,
        upload_name: str = default_settings.UPLOAD_COUNTER_NAME,
        download_name: str = default_settings.DOWNLOAD_COUNTER_NAME,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        :param url: The full URL of the metrics endpoint.
        :param timeout: Seconds before a request is abandoned.
        :param upload_name: Sample name of the cumulative upload counter.
        :param download_name: Sample name of the cumulative download counter.
        :param session: An optional pre-configured `requests.Session`.
        """
        self.url = url
        self.timeout = timeout
        self.upload_name = upload_name
        self.download_name = download_name
        self.session = session or requests.Session()

    def scrape(self) -> ScrapeSample:
        """
        Performs one bounded GET against the metrics endpoint.

        :return ScrapeSample: The counters as currently reported by the worker.
        :raises ScrapeError: On any transport failure or non-200 response.
        """
        try:
            response = self.session.get(self.url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ScrapeError(f"Could not reach metrics endpoint '{self.url}': {e}") from e

        if response.status_code != 200:
            raise ScrapeError(f"Metrics endpoint '{self.url}' returned status {response.status_code}")

        values = parse_counters(response.text, (self.upload_name, self.download_name))
        return ScrapeSample(
            upload_bytes_total=values[self.upload_name],
            download_bytes_total=values[self.download_name],
        )

    def close(self) -> None:
        self.session.close()
