"""Tests for the crawler's outbound request guard.

Only IP literals and blocked names are used so no DNS lookups are needed.
"""

import pytest

from pipelines.security import SSRFError, check_url_ssrf, is_blocked_ip


class TestSSRFProtection:
    """Test suite for SSRF protection mechanisms"""

    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/test",
        "http://10.0.0.1/test",
        "http://172.16.0.1/test",
        "http://192.168.1.1/test",
        "http://169.254.169.254/latest/meta-data",
        "http://[::1]/test",
        "http://[fc00::1]/test",
    ])
    def test_private_addresses_blocked(self, url):
        with pytest.raises(SSRFError, match="blocked address"):
            check_url_ssrf(url)

    @pytest.mark.parametrize("url", [
        "file:///etc/passwd",
        "ftp://example.com/file.txt",
        "gopher://example.com/",
    ])
    def test_non_http_schemes_blocked(self, url):
        with pytest.raises(SSRFError, match="not allowed"):
            check_url_ssrf(url)

    @pytest.mark.parametrize("url", [
        "http://93.184.216.34:22/",
        "http://93.184.216.34:5432/",
        "http://93.184.216.34:6379/",
    ])
    def test_internal_service_ports_blocked(self, url):
        with pytest.raises(SSRFError, match="Port"):
            check_url_ssrf(url)

    @pytest.mark.parametrize("url", [
        "http://localhost/admin",
        "http://metadata.google.internal/computeMetadata/v1/",
        "http://db.cluster.internal/",
    ])
    def test_blocked_hostnames(self, url):
        with pytest.raises(SSRFError, match="is blocked"):
            check_url_ssrf(url)

    def test_missing_hostname(self):
        with pytest.raises(SSRFError, match="hostname"):
            check_url_ssrf("http:///path")

    def test_public_address_allowed(self):
        check_url_ssrf("https://93.184.216.34/docs")
        check_url_ssrf("http://8.8.8.8:8080/")

    def test_private_networks_allowed_when_enabled(self):
        check_url_ssrf("http://127.0.0.1:8000/", allow_private=True)

    def test_ports_still_blocked_when_private_allowed(self):
        with pytest.raises(SSRFError):
            check_url_ssrf("http://127.0.0.1:6379/", allow_private=True)

    def test_ipv4_mapped_ipv6_is_unwrapped(self):
        assert is_blocked_ip("::ffff:127.0.0.1")
        assert not is_blocked_ip("::ffff:8.8.8.8")
        assert is_blocked_ip("not-an-ip")
