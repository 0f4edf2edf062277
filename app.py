import logging

import click
from flask import Flask
from flask_migrate import Migrate

from config import Config
from models import db
from models.user import User, ROOT_ADMIN_ROLE
from routes import health_bp, auth_bp, otp_bp, security_bp, admin_bp
from security.store import init_stores
from utils.auth_context import load_current_user
from utils.errors import register_error_handlers
from utils.seed import seed_roles, grant_role
from utils.sweeper import run_sweeps, start_sweeps


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    init_stores(app)
    register_error_handlers(app)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(otp_bp)
    app.register_blueprint(security_bp)
    app.register_blueprint(admin_bp)

    @app.before_request
    def _load_user():
        load_current_user()

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    if app.config.get("SWEEPS_ENABLED"):
        start_sweeps(app)

    return app


def register_cli(app):
    @app.cli.command("seed-roles")
    def seed_roles_command():
        """Create the default roles (idempotent)."""
        seed_roles()
        click.echo("Roles seeded")

    @app.cli.command("make-root-admin")
    @click.argument("email")
    def make_root_admin(email):
        """Grant SUPER_ADMIN to a user by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return
        grant_role(user, ROOT_ADMIN_ROLE)
        click.echo(f"{user.email} promoted to {ROOT_ADMIN_ROLE}")

    @app.cli.command("run-sweeps")
    def run_sweeps_command():
        """Run every cleanup job once and exit."""
        for job_id, removed in run_sweeps(app).items():
            click.echo(f"{job_id}: {removed}")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
