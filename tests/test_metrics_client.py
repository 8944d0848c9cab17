import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from relaywatch.local.errors import ScrapeError
from relaywatch.local.metrics_client import MetricsScraper, ScrapeSample, parse_counters

UP = "conduit_bytes_uploaded"
DOWN = "conduit_bytes_downloaded"

EXPOSITION = """\
# HELP conduit_bytes_uploaded Total number of bytes uploaded through the proxy
# TYPE conduit_bytes_uploaded gauge
conduit_bytes_uploaded 1.5e+06
# HELP conduit_bytes_downloaded Total number of bytes downloaded through the proxy
# TYPE conduit_bytes_downloaded gauge
conduit_bytes_downloaded 2500
conduit_geo_bytes_uploaded_total{country_code="CA"} 999
conduit_connected_clients 4
"""


def test_parse_counters_reads_both_samples():
    assert parse_counters(EXPOSITION, (UP, DOWN)) == {UP: 1_500_000, DOWN: 2500}


def test_parse_counters_requires_exact_name_token():
    text = "conduit_bytes_uploaded_total 500\nconduit_bytes_uploadedx 7\n"

    assert parse_counters(text, (UP,)) == {UP: 0}


def test_parse_counters_defaults_missing_and_garbage_to_zero():
    text = "# conduit_bytes_uploaded 10\nconduit_bytes_downloaded NaNish\nconduit_bytes_uploaded\n"

    assert parse_counters(text, (UP, DOWN)) == {UP: 0, DOWN: 0}


def test_parse_counters_ignores_labelled_samples():
    text = 'conduit_bytes_uploaded{region="eu"} 100\n'

    assert parse_counters(text, (UP,)) == {UP: 0}


def test_scrape_sample_total():
    assert ScrapeSample(upload_bytes_total=3, download_bytes_total=4).total == 7


@pytest.fixture
def metrics_server():
    class Handler(BaseHTTPRequestHandler):
        status = 200
        body = EXPOSITION

        def do_GET(self):
            payload = self.body.encode("utf-8")
            self.send_response(self.status)
            self.send_header("Content-Type", "text/plain; version=0.0.4")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format_str, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    server.handler = Handler
    server.url = f"http://127.0.0.1:{server.server_address[1]}/metrics"
    yield server
    server.shutdown()
    server.server_close()


def test_scrape_returns_counters(metrics_server):
    scraper = MetricsScraper(metrics_server.url, timeout=2)

    assert scraper.scrape() == ScrapeSample(upload_bytes_total=1_500_000, download_bytes_total=2500)
    scraper.close()


def test_scrape_without_published_counters_reports_zero(metrics_server):
    metrics_server.handler.body = "# nothing yet\n"

    assert MetricsScraper(metrics_server.url, timeout=2).scrape() == ScrapeSample(0, 0)


def test_scrape_non_200_is_an_error(metrics_server):
    metrics_server.handler.status = 503

    with pytest.raises(ScrapeError, match="503"):
        MetricsScraper(metrics_server.url, timeout=2).scrape()


def test_scrape_unreachable_endpoint_is_an_error():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    with pytest.raises(ScrapeError):
        MetricsScraper(f"http://127.0.0.1:{port}/metrics", timeout=1).scrape()
