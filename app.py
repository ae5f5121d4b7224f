"""Application entry point for the DeskHub API."""

from deskhub.webapp import create_app
from deskhub.workspace.config import Settings, configure_logging

settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings=settings)


if __name__ == "__main__":
    app.run(debug=True)
