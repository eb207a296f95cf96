from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_wtf import CSRFProtect

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()

# Keys under app.extensions for the app-owned service objects
RATE_LIMITER_KEY = "paydesk.rate_limiter"
NOTIFIER_KEY = "paydesk.notifier"
