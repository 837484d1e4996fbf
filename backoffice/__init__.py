import logging
import os

from flask import Flask

logger = logging.getLogger(__name__)


def _float_env(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def create_app(test_config=None):
    # create and configure the app
    app = Flask(__name__, instance_relative_config=True)

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        logger.warning("SECRET_KEY environment variable not set. Using a temporary key.")
        SECRET_KEY = os.urandom(24)

    app.config.from_mapping(
        SECRET_KEY=SECRET_KEY,
        DATABASE_URL=os.getenv("DATABASE_URL"),
        DOCUMENT_STORE=os.getenv("DOCUMENT_STORE", "postgres"),
        DEFAULT_TVA_RATE=_float_env("DEFAULT_TVA_RATE", 10.0),
        REGISTER_TABLE_COUNT=int(_float_env("REGISTER_TABLE_COUNT", 12)),
        ANTHROPIC_API_KEY=os.getenv("ANTHROPIC_API_KEY"),
        LLM_MODEL=os.getenv("LLM_MODEL"),
    )

    if test_config is None:
        # load the instance config, if it exists, when not testing
        app.config.from_pyfile("config.py", silent=True)
    else:
        app.config.from_mapping(test_config)

    from . import db

    db.init_app(app)

    from . import routes_core

    app.register_blueprint(routes_core.bp)

    from . import routes_data

    app.register_blueprint(routes_data.bp)

    from . import routes_ops

    app.register_blueprint(routes_ops.bp)

    return app
