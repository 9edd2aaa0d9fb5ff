"""Run the development server: ``python -m timetrack.server [project_dir]``."""

from __future__ import annotations

import logging
import sys

from timetrack.server.app import create_app
from timetrack.settings import ConfigManager, configure_logging
from timetrack.store.document_store import DocumentStore
from timetrack.store.maintenance import CleanupScheduler

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    project_dir = argv[0] if argv else "."

    settings = ConfigManager().load_settings(project_dir)
    configure_logging(settings)

    store = DocumentStore.from_settings(settings)
    cleanup = CleanupScheduler(store)
    cleanup.start()

    logger.info("Serving data from %s (%s profile)", settings.data_dir, settings.env)
    app = create_app(settings, store=store)
    try:
        app.run(host="0.0.0.0", port=5000, threaded=True)
    finally:
        cleanup.stop()


if __name__ == "__main__":
    main()
