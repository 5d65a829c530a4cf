from salonbook.api.booking.availability import availability_bp
from salonbook.api.booking.holds import holds_bp
from salonbook.api.booking.bookings import bookings_bp
from salonbook.api.payroll.pay_runs import pay_runs_bp
from flask import Flask
from flask_cors import CORS
from dotenv import load_dotenv
from flasgger import Swagger
from swagger__config import SWAGGER_CONFIG, SWAGGER_TEMPLATE
import logging
import os

load_dotenv()
from salonbook.config import Config  # noqa: E402
from salonbook.errors import register_error_handlers  # noqa: E402
from salonbook.extensions import db  # noqa: E402
from salonbook.services.cache import AvailabilityCache  # noqa: E402
from salonbook.wiring import CACHE_EXTENSION  # noqa: E402


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config["LOG_LEVEL"])

    try:
        CORS(app)
        db.init_app(app)

        # Determine host based on environment
        host = os.environ.get("API_HOST", "127.0.0.1:5000")
        swagger_template = SWAGGER_TEMPLATE.copy()
        swagger_template["host"] = host
        Swagger(app, config=SWAGGER_CONFIG, template=swagger_template)

        app.extensions[CACHE_EXTENSION] = AvailabilityCache.from_url(
            app.config["REDIS_URL"], app.config["AVAILABILITY_CACHE_TTL_SECONDS"]
        )
        if not app.config["REDIS_URL"]:
            app.logger.info("REDIS_URL not set, availability cache disabled")

        register_error_handlers(app)

        blueprints = [
            availability_bp,
            holds_bp,
            bookings_bp,
            pay_runs_bp,
        ]

        for bp in blueprints:
            app.register_blueprint(bp)
            app.logger.debug(f"  {bp.name} registered")

        @app.route("/")
        def home():
            """
            Root endpoint - API status
            ---
            tags:
              - Utility
            responses:
              200:
                description: API is running
                schema:
                  type: object
                  properties:
                    status:
                      type: string
                    message:
                      type: string
            """
            return {"status": "ok", "message": "Backend is running!"}, 200

        if app.config["SCHEDULER_ENABLED"] and not app.config["TESTING"]:
            from salonbook.scheduler import init_scheduler

            init_scheduler(app)

    except Exception as e:
        app.logger.error(f"Error during app creation: {e}")
        raise

    app.logger.info(f"create_app() completed, {len(list(app.url_map.iter_rules()))} routes")
    return app


if __name__ == "__main__":
    # Create a .env containing:
    #       DATABASE_URL= mysql+pymysql://<USER>:<PASSWORD>@<HOST>:<PORT>/salonbook
    #       REDIS_URL= redis://localhost:6379/0   (optional)
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(
        host="0.0.0.0", port=port, debug=os.environ.get("FLASK_ENV") != "production"
    )
