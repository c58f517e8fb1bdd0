"""SiteChat API server, chat orchestration and background jobs."""
