"""Business listing scraper package.

Harvests business records from map listings for towns x industries,
resolves phone providers through a carrier lookup, and survives timeouts,
captchas and restarts.

Key modules:
    navigation      -- NavigationManager with retries, wait ladder and adaptive timeout
    batch           -- BrowserBatchManager capping items per browser instance
    browser         -- BrowserConfig and the Playwright / curl_cffi launchers
    retry_queue     -- RetryQueue, durable back-off queue for failed items
    provider_cache  -- ProviderLookupCache, persistent phone -> provider map
    provider_lookup -- Browser and HTTP carrier lookups, parse_provider
    industry_scraper -- IndustryScraper for one (town, industry) pair
    extractors      -- prioritized field extractor chains for listing cards
    captcha         -- CaptchaDetector for challenge and block pages
    orchestrator    -- ScrapingOrchestrator running a whole job
    service         -- ScrapeService, job submission and session registry
    events          -- EventEmitter for progress/log/error/complete
    controller      -- ThreadPoolController for concurrent batches
    metrics         -- MetricsCollector for runtime statistics
    storage         -- RecordStorage and JsonlRecordStorage
    db              -- SQLAlchemy models and engine helpers
    config          -- Settings and per-component config dataclasses
    models          -- ScrapeJob, WorkUnit, BusinessRecord and friends
    backoff         -- BackoffStrategy for exponential retry delays
    errors          -- exception taxonomy
    phones          -- phone number normalisation
    logging_utils   -- structured JSON log lines
"""
