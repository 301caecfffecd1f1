from prometheus_client import Counter, Histogram, start_http_server

# 低基数标签：operation / mode / outcome 取值均为固定集合，不带对象 key
PARTS_UPLOADED = Counter(
    "s3stream_parts_uploaded_total",
    "Total multipart parts uploaded",
)

BYTES_UPLOADED = Counter(
    "s3stream_bytes_uploaded_total",
    "Total bytes sent to object storage",
)

COMMITS = Counter(
    "s3stream_commits_total",
    "Writer commit attempts by upload mode and outcome",
    ["mode", "outcome"],
)

ABORTS = Counter(
    "s3stream_aborts_total",
    "Multipart upload aborts by result",
    ["result"],
)

LATENCY = Histogram(
    "s3stream_storage_request_duration_seconds",
    "Storage request latency in seconds",
    ["operation"],
)


def start_metrics_server(port: int, addr: str = "0.0.0.0") -> None:
    """Expose /metrics over HTTP for long-running uploads."""
    start_http_server(port, addr=addr)
