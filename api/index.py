from mangum import Mangum

from affiliate_ledger.api import app
from affiliate_ledger.logging_config import setup_logging

setup_logging()

# Each request runs as an independent invocation; no lifespan events
handler = Mangum(app, api_gateway_base_path="/api", lifespan="off")
