# FILE: scripts/openapi_dump.py
# Usage: python scripts/openapi_dump.py [out.json]
# Builds the app in-process with docs enabled and prints its OpenAPI document.
import json, sys
from trustgate.config import settings_for_tests
from trustgate.service_http import create_app

app = create_app(settings_for_tests(enable_docs=True))
doc = json.dumps(app.openapi(), indent=2)
if len(sys.argv) > 1:
    with open(sys.argv[1], "w", encoding="utf-8") as f:
        f.write(doc)
else:
    print(doc)
