from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

registry = CollectorRegistry()

og_image_generation_duration = Histogram(
    "og_image_generation_duration_seconds",
    "Duration of OG image generation steps in seconds",
    labelnames=("step", "address", "cache_hit", "status"),
    buckets=(0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 0.8, 1, 2, 3, 4, 5, 10),
    registry=registry,
)

og_image_requests_total = Counter(
    "og_image_requests_total",
    "Total number of OG image requests",
    labelnames=("status", "cache_hit"),
    registry=registry,
)

og_image_size_bytes = Gauge(
    "og_image_size_bytes",
    "Size of generated OG images in bytes",
    labelnames=("address",),
    registry=registry,
)

cloudflare_upload_duration = Histogram(
    "cloudflare_upload_duration_seconds",
    "Duration of image CDN upload in seconds",
    labelnames=("status", "address"),
    buckets=(0.1, 0.5, 1, 2, 5, 10),
    registry=registry,
)

refresh_addresses_total = Counter(
    "poap_refresh_addresses_total",
    "Addresses visited by the recent-mint refresh job",
    labelnames=("outcome",),
    registry=registry,
)
