from __future__ import annotations

import logging
from typing import Optional

from aiohttp import web

from ..modules.adaptive.domain.errors import (
    ConfigurationError,
    ScanLimitExceededError,
    TransientStorageError,
)
from ..modules.adaptive.services.adaptive_service import AdaptiveLinkService
from ..modules.adaptive.utils.fingerprint import client_ip, derive_fingerprint

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 5


def _is_web_url(content: str) -> bool:
    return content.lower().startswith(("http://", "https://"))


def create_web_app(
    service: AdaptiveLinkService,
    *,
    fingerprint_salt: str = "",
    default_timezone: Optional[str] = None,
) -> web.Application:
    """
    Build the public redirect application.

    Routes:
    - GET /r/{slug} - Resolve a scan and redirect (307) or render the content
    - GET /r/{slug}/info - Link summary and the content served right now
    - GET /health - Liveness probe
    """

    async def scan_handler(request: web.Request) -> web.StreamResponse:
        slug = request.match_info["slug"]
        ip = client_ip(request.headers, request.remote)
        user_agent = request.headers.get("User-Agent")
        fingerprint = derive_fingerprint(ip, user_agent, fingerprint_salt)

        try:
            outcome = await service.handle_scan(
                slug,
                fingerprint=fingerprint,
                ip=ip,
                user_agent=user_agent,
            )
        except ScanLimitExceededError as e:
            return web.json_response(
                {
                    "error": "Monthly scan limit reached",
                    "limitExceeded": True,
                    "scansUsed": e.used,
                    "limit": e.limit,
                },
                status=429,
            )
        except ConfigurationError as e:
            logger.error(f"Adaptive link {slug} is misconfigured: {e}")
            return web.json_response({"error": "content unavailable"}, status=503)
        except TransientStorageError as e:
            logger.warning(f"Visitor store unavailable while serving {slug}: {e}")
            return web.json_response(
                {"error": "temporarily unavailable"},
                status=503,
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )
        except Exception as e:
            logger.error(f"Unexpected error while serving {slug}: {e}", exc_info=True)
            return web.json_response({"error": "internal error"}, status=500)

        if outcome is None:
            return web.json_response({"error": "not found"}, status=404)

        content = outcome.resolution.content
        if _is_web_url(content):
            return web.Response(status=307, headers={"Location": content})
        return web.Response(text=content, content_type="text/plain")

    async def info_handler(request: web.Request) -> web.Response:
        slug = request.match_info["slug"]
        link = await service.get_link_by_slug(slug)
        if link is None:
            return web.json_response({"error": "not found"}, status=404)

        payload = {
            "id": link.link_id,
            "slug": link.slug,
            "name": link.name,
            "timezone": link.timezone or default_timezone or "UTC",
            "slots": [{"id": slot.id, "name": slot.name} for slot in link.slots],
            "defaultSlot": link.effective_default_slot_id,
            "scansUsed": link.scan_count,
            "limit": link.scan_limit,
        }

        try:
            preview = service.resolver.preview(link, ip=client_ip(request.headers, request.remote))
        except ConfigurationError as e:
            logger.warning(f"Preview failed for {slug}: {e}")
            payload["current"] = None
        else:
            payload["current"] = {
                "slot": preview.slot_id,
                "rule": preview.matched_rule.value,
                "ruleIndex": preview.rule_index,
            }

        return web.json_response(payload)

    async def health_handler(request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    app = web.Application()
    app.router.add_get("/r/{slug}", scan_handler)
    app.router.add_get("/r/{slug}/info", info_handler)
    app.router.add_get("/health", health_handler)
    return app


async def start_web_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Redirect server running on http://{host}:{port}")
    return runner
