"""Job handlers for SiteChat background work."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from indexer.models import CrawlOptions, CrawlStatus, Website
from observability.prometheus_metrics import record_crawl_page, record_crawl_run
from pipelines.crawler import WebsiteCrawler

logger = logging.getLogger(__name__)

CRAWL_JOB = "crawl_website"


def resolve_crawl_options(website: Website, overrides: Optional[Dict[str, Any]] = None) -> CrawlOptions:
    """Website crawl settings with per-request overrides applied on top."""
    base = website.settings.crawl or CrawlOptions()
    if not overrides:
        return base
    requested = CrawlOptions.model_validate(overrides).model_dump(exclude_unset=True)
    return base.model_copy(update=requested)


async def release_claim(store, website_id: str):
    """Fail a crawl that was claimed by the API but never reached the crawler."""
    try:
        await store.update_crawl_status(website_id, CrawlStatus.FAILED)
    except Exception as e:
        logger.error(f"Could not release crawl claim for website {website_id}: {e}")


def make_crawl_handler(services):
    """Bind the crawl handler to the running service container."""

    async def crawl_website_job(job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        website_id = params.get("website_id")
        if not website_id:
            raise ValueError("website_id parameter is required")
        claimed = bool(params.get("claimed"))

        try:
            website = await services.store.get_website(website_id)
            if website is None:
                raise ValueError(f"Website not found: {website_id}")
            options = resolve_crawl_options(website, params.get("options"))
        except Exception:
            if claimed:
                await release_claim(services.store, website_id)
            raise

        logger.info(f"Job {job_id}: crawling {website.domain} with max_pages={options.max_pages}, "
                    f"max_depth={options.max_depth}")

        crawler = WebsiteCrawler(
            website,
            services.store,
            services.embeddings,
            options=options,
            fetcher=services.fetcher_factory(),
            stale_after=services.stale_after,
            on_page=record_crawl_page,
            claimed=claimed,
        )
        result = await crawler.crawl()
        record_crawl_run(result.success, result.documents_created if result.success else None)

        logger.info(f"Job {job_id}: crawl of {website.domain} finished "
                    f"(success={result.success}, chunks={result.documents_created})")
        return {"website_id": website.id, **result.to_dict()}

    return crawl_website_job


async def reap_stale_crawls(store, stale_after: timedelta) -> List[str]:
    """Fail crawls stuck in ``crawling`` for longer than ``stale_after``."""
    website_ids = await store.reset_stale_crawls(stale_after)
    for website_id in website_ids:
        logger.warning(f"Crawl for website {website_id} exceeded {stale_after} and was marked failed")
    return website_ids


def register_job_handlers(services):
    services.jobs.register_handler(CRAWL_JOB, make_crawl_handler(services))
    logger.info("Job handlers registered successfully")
