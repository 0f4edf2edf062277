from .health import health_bp
from .auth import auth_bp
from .otp import otp_bp
from .security import security_bp
from .admin import admin_bp
