from mangum import Mangum

from points_ledger.api import create_app
from points_ledger.config import LedgerSettings, configure_logging

settings = LedgerSettings.from_env()
configure_logging(settings.log_level)

app = create_app(settings=settings, root_path="/api")

handler = Mangum(app)
