"""
Amazon Ads Reporting API client.
Creates and retrieves asynchronous reports and downloads completed report parts.
Every call to the Ads API goes through the shared AdaptiveRateLimiter.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
import httpx

from app.errors import ExternalApiError
from app.rate_limiter import AdaptiveRateLimiter
from app.services.token_service import TokenService

logger = logging.getLogger(__name__)

# ── Region URL Mapping ────────────────────────────────────────────────
REGION_URLS = {
    "na": "https://advertising-api.amazon.com",
    "eu": "https://advertising-api-eu.amazon.com",
    "fe": "https://advertising-api-fe.amazon.com",
}

API_TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 60.0


@dataclass
class ReportStatus:
    """Live state of an asynchronous report as returned by retrieve."""
    report_id: str
    status: str
    urls: list[str] = field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"

    @property
    def download_url(self) -> Optional[str]:
        return self.urls[0] if self.urls else None


class AmazonAdsClient:
    """
    Thin wrapper around the Ads API reporting endpoints.
    One client per region; the limiter is shared across every client in the process.
    """

    def __init__(
        self,
        token_service: TokenService,
        limiter: AdaptiveRateLimiter,
        http: httpx.AsyncClient,
        region: str = "na",
    ):
        self.token_service = token_service
        self.limiter = limiter
        self.region = region.lower()
        self._http = http

    @property
    def base_url(self) -> str:
        url = REGION_URLS.get(self.region)
        if not url:
            raise ValueError(f"Unsupported region: {self.region}. Use na, eu, or fe.")
        return url

    async def _headers(self, profile_id: Optional[str] = None) -> dict[str, str]:
        access_token = await self.token_service.get_access_token()
        h = {
            "Amazon-Advertising-API-ClientId": self.token_service.client_id,
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if profile_id:
            h["Amazon-Advertising-API-Scope"] = str(profile_id)
        return h

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Optional[dict] = None,
        profile_id: Optional[str] = None,
        timeout: float = API_TIMEOUT,
    ) -> httpx.Response:
        """Send one throttled request. Network failures become ExternalApiError."""
        headers = await self._headers(profile_id)

        async def send() -> httpx.Response:
            try:
                return await self._http.request(method, url, json=json, headers=headers, timeout=timeout)
            except httpx.TransportError as e:
                raise ExternalApiError(
                    f"Network error during {method} {url}: {e}", method=method, url=url,
                ) from e

        response = await self.limiter.call(send)
        if response.status_code == 401:
            self.token_service.invalidate()
        if not response.is_success:
            raise ExternalApiError(
                f"{method} {url} failed: {response.status_code} {response.reason_phrase}. {response.text[:500]}",
                status_code=response.status_code,
                method=method,
                url=url,
            )
        return response

    # ── Reports ───────────────────────────────────────────────────────

    async def create_report(
        self,
        advertiser_account_id: str,
        start_date: str,
        end_date: str,
        fields: list[str],
        report_format: str = "GZIP_JSON",
    ) -> str:
        """Request a report for one account and date range. Returns the report id."""
        body = {
            "accessRequestedAccounts": [{"advertiserAccountId": advertiser_account_id}],
            "reports": [
                {
                    "format": report_format,
                    "periods": [{"datePeriod": {"startDate": start_date, "endDate": end_date}}],
                    "query": {"fields": fields},
                }
            ],
        }
        url = f"{self.base_url}/adsApi/v1/create/reports"
        response = await self._request("POST", url, json=body)
        report_id = self._extract_report_id(response.json())
        if not report_id:
            raise ExternalApiError(
                f"Create report response had no report id: {response.text[:500]}",
                status_code=response.status_code, method="POST", url=url,
            )
        logger.info(f"Report {report_id} requested for {advertiser_account_id} ({start_date}..{end_date})")
        return report_id

    async def retrieve_report(self, report_id: str, profile_id: Optional[str] = None) -> Optional[ReportStatus]:
        """Fetch the live status of a report. None when the API does not know the id."""
        url = f"{self.base_url}/adsApi/v1/retrieve/reports"
        response = await self._request("POST", url, json={"reportIds": [report_id]}, profile_id=profile_id)
        return self._parse_report_status(response.json(), report_id)

    async def download_report(self, url: str, timeout: float = DOWNLOAD_TIMEOUT) -> bytes:
        """Download a completed report part (pre-signed URL, not throttled)."""
        try:
            response = await self._http.get(url, timeout=timeout)
        except httpx.TransportError as e:
            raise ExternalApiError(f"Network error during GET {url}: {e}", method="GET", url=url) from e
        if not response.is_success:
            raise ExternalApiError(
                f"Report download failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code, method="GET", url=url,
            )
        return response.content

    # ── Response parsing ──────────────────────────────────────────────

    @staticmethod
    def _extract_report_id(result: Any) -> Optional[str]:
        """Format: {"success": [{"index": 0, "report": {"reportId": "..."}}]}"""
        if not isinstance(result, dict):
            return None
        for entry in result.get("success") or []:
            if isinstance(entry, dict):
                report = entry.get("report") or {}
                if isinstance(report, dict) and report.get("reportId"):
                    return str(report["reportId"])
        return None

    @staticmethod
    def _parse_report_status(result: Any, report_id: str) -> Optional[ReportStatus]:
        if not isinstance(result, dict):
            return None
        for entry in result.get("success") or []:
            if not isinstance(entry, dict):
                continue
            report = entry.get("report") or {}
            if not isinstance(report, dict) or "status" not in report:
                continue
            parts = report.get("completedReportParts") or []
            urls = [p["url"] for p in parts if isinstance(p, dict) and p.get("url")]
            return ReportStatus(
                report_id=str(report.get("reportId") or report_id),
                status=report["status"],
                urls=urls,
                failure_reason=report.get("failureReason"),
            )
        return None


def create_ads_client(
    token_service: TokenService,
    limiter: AdaptiveRateLimiter,
    http: httpx.AsyncClient,
    region: str = "na",
) -> AmazonAdsClient:
    """Factory function to create an Ads API client instance."""
    return AmazonAdsClient(token_service=token_service, limiter=limiter, http=http, region=region)
