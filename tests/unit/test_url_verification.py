"""
Unit tests for website verification
"""

import httpx
import pytest

from enrichment.stages.url_verification import (
    UrlCheck,
    UrlVerifier,
    adjust_website_score,
    name_matches_host,
)


def make_verifier(handler) -> UrlVerifier:
    return UrlVerifier(timeout=2.0, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestNameMatch:

    def test_company_word_in_host(self):
        assert name_matches_host("Acme Tecnología S.A.S.", "https://www.acme.example") is True

    def test_accents_folded(self):
        assert name_matches_host("Panadería Dulzura", "dulzura.example") is True

    def test_joined_tokens(self):
        assert name_matches_host("Blue Ocean", "https://blueocean.example") is True

    def test_stopwords_do_not_match(self):
        assert name_matches_host("The Group", "https://thegroup.example") is False

    def test_unrelated_host(self):
        assert name_matches_host("Acme", "https://example.org") is False


class TestAdjustScore:

    def test_accessible_with_name_match(self):
        check = UrlCheck(url="https://acme.example", accessible=True, name_match=True)
        assert adjust_website_score(0.6, check) == pytest.approx(0.88)

    def test_accessible_without_match(self):
        check = UrlCheck(url="https://acme.example", accessible=True)
        assert adjust_website_score(0.7, check) == pytest.approx(0.77)

    def test_capped_at_one(self):
        check = UrlCheck(url="https://acme.example", accessible=True, name_match=True)
        assert adjust_website_score(1.0, check) == 1.0

    def test_unreachable_penalty(self):
        check = UrlCheck(url="https://acme.example", accessible=False)
        assert adjust_website_score(0.5, check) == pytest.approx(0.4)


class TestUrlVerifier:
    """Test HEAD probing with HTTPS first"""

    @pytest.mark.asyncio
    async def test_https_reachable(self):
        verifier = make_verifier(lambda request: httpx.Response(200))

        check = await verifier.verify("acme.example", "Acme")

        assert check.accessible is True
        assert check.has_ssl is True
        assert check.status_code == 200
        assert check.name_match is True
        assert check.url == "https://acme.example"

    @pytest.mark.asyncio
    async def test_falls_back_to_http(self):
        def handler(request):
            if request.url.scheme == "https":
                raise httpx.ConnectError("ssl failure", request=request)
            return httpx.Response(200)

        check = await make_verifier(handler).verify("https://acme.example", "Acme")

        assert check.accessible is True
        assert check.has_ssl is False
        assert check.url == "http://acme.example"

    @pytest.mark.asyncio
    async def test_head_not_allowed_counts_as_up(self):
        check = await make_verifier(lambda request: httpx.Response(405)).verify("acme.example", "Acme")

        assert check.accessible is True

    @pytest.mark.asyncio
    async def test_not_found_is_inaccessible(self):
        check = await make_verifier(lambda request: httpx.Response(404)).verify("acme.example", "Acme")

        assert check.accessible is False
        assert check.confidence == 0.0

    @pytest.mark.asyncio
    async def test_unreachable_everywhere(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        check = await make_verifier(handler).verify("acme.example", "Acme")

        assert check.accessible is False
        assert check.error == "URL not accessible via HTTPS or HTTP"
