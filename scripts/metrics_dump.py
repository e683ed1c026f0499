# FILE: scripts/metrics_dump.py
# Usage: python -m infermetrics.service_http & then python scripts/metrics_dump.py [url] [prefix]
import sys, urllib.request
url = sys.argv[1] if len(sys.argv) > 1 else "http://127.0.0.1:8000/metrics"
prefix = sys.argv[2] if len(sys.argv) > 2 else "nv_"
text = urllib.request.urlopen(url).read().decode("utf-8")
print("\n".join(l for l in text.splitlines() if l.startswith(prefix) or l.startswith("# TYPE " + prefix)))
