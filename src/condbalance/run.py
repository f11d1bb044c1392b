# -*- coding: utf-8 -*-
"""Run the condbalance service.

You can either use the command line interface via ``condbalance run``
from within your study directory, or import :class:`BalancerRunner`
into your own script and run it from there.

.. code-block:: python

    from condbalance.run import BalancerRunner

    if __name__ == "__main__":
        runner = BalancerRunner()
        runner.auto_run()

If you want more control over how the app is being run, you can call
the individual methods by hand and call :meth:`BalancerRunner.app.run`
with arguments of your choice.

.. code-block:: python

    from condbalance.run import BalancerRunner

    if __name__ == "__main__":
        runner = BalancerRunner()
        runner.configure_logging()
        runner.create_app()
        runner.set_port()
        runner.print_startup_message()
        runner.app.run(port=runner.port, threaded=True, use_reloader=False)
"""

import logging
import sys
from pathlib import Path

from condbalance import log as balancelog
from condbalance import server
from condbalance._helper import find_free_port
from condbalance.balancer import Balancer
from condbalance.config import BalancerConfig, BalancerSecrets


class BalancerRunner:
    """
    Sets up and runs the balancer service for a study directory.

    Args:
        path (str): Study directory, i.e. the directory containing the
            ``config.conf``. Defaults to the current working directory.
        config_objects (list): Additional configuration, passed on to
            :class:`~condbalance.config.BalancerConfig`.
    """

    def __init__(self, path: str = None, config_objects: list = None):
        self.expdir = Path(path).resolve() if path is not None else Path.cwd()
        self.config = BalancerConfig(self.expdir, config_objects=config_objects)
        self.secrets = BalancerSecrets(self.expdir)
        self.balancer = None
        self.app = None
        self.port = None

    @property
    def debug(self) -> bool:
        return self.config.getboolean("general", "debug")

    def configure_logging(self):
        """Configures the ``condbalance`` logger.

        * Messages are written to a logfile in the directory configured
          in option *path* of section *log*, and to stderr.
        * The level is taken from option *level* of section *log*,
          unless debug mode is active and overrides it.
        """
        config = self.config

        study_id = config.get("metadata", "study_id")
        logger = logging.getLogger(balancelog.BASE_LOGGER)

        formatter = balancelog.prepare_formatter(study_id)

        logfile = "condbalance_debug.log" if self.debug else "condbalance.log"
        logpath = config.subpath(config.get("log", "path")) / logfile
        file_handler = balancelog.prepare_file_handler(logpath)
        file_handler.setFormatter(formatter)

        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)

        logger.addHandler(file_handler)
        logger.addHandler(stream_handler)

        lvl = config.get("log", "level")
        if self.debug and config.getboolean("debug", "log_level_override"):
            lvl = config.get("debug", "log_level")

        logger.setLevel(balancelog.parse_level(lvl))

    def create_balancer(self) -> Balancer:
        self.balancer = Balancer.from_config(self.config, self.secrets)
        return self.balancer

    def create_app(self):
        if self.balancer is None:
            self.create_balancer()

        server.Service.balancer = self.balancer
        server.Service.config = self.config
        server.Service.cors_origins = self.config.get("server", "cors_origins")

        self.app = server.app
        return self.app

    def set_port(self, port: int = None):
        start = port if port is not None else self.config.getint("server", "port")
        self.port = find_free_port(start, host=self.config.get("server", "host"))

    def print_startup_message(self):
        host = self.config.get("server", "host")
        sys.stderr.writelines(
            [
                f" * Balancing {self.balancer.nconditions} conditions\n",
                f" * Service running at http://{host}:{self.port}\n",
            ]
        )

    def auto_run(self, port: int = None, debug: bool = None):
        """
        Automatically runs the service.

        Args:
            port: Port to start searching for a free port at. Defaults
                to option *port* of section *server*.
            debug: Indicates, whether the underlying flask app should be
                run in debug mode. Defaults to None, which leads to
                taking the value from option *debug* of section *general*.
        """
        if debug is not None:
            self.config.read_dict({"general": {"debug": str(debug).lower()}})

        self.configure_logging()
        self.create_app()
        self.set_port(port)
        self.print_startup_message()

        host = self.config.get("server", "host")
        self.app.run(host=host, port=self.port, threaded=True, use_reloader=False, debug=self.debug)
