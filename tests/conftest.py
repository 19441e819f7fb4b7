import os

# Tests never export spans.
os.environ.setdefault("LH_OTEL_ENABLED", "false")
