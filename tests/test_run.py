import logging
import socket

import pytest

from condbalance import server
from condbalance._helper import find_free_port, socket_checker
from condbalance.balancer import Balancer
from condbalance.run import BalancerRunner


@pytest.fixture
def runner(tmp_path):
    runner = BalancerRunner(str(tmp_path), config_objects=[{"balancer": {"nconditions": "2"}}])
    yield runner

    logger = logging.getLogger("condbalance")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)

    server.Service.balancer = None
    if runner.balancer is not None:
        runner.balancer.store.close()


class TestBalancerRunner:
    def test_configure_logging(self, runner, tmp_path):
        runner.configure_logging()
        logging.getLogger("condbalance.balancer").info("hello from the runner")

        logfile = tmp_path / "log" / "condbalance.log"
        assert logfile.exists()
        for handler in logging.getLogger("condbalance").handlers:
            handler.flush()
        content = logfile.read_text()
        assert "study id=default_study" in content
        assert "hello from the runner" in content
        assert logging.getLogger("condbalance").level == logging.INFO

    def test_debug_logging(self, tmp_path):
        config = [{"general": {"debug": "true"}}]
        runner = BalancerRunner(str(tmp_path), config_objects=config)
        try:
            runner.configure_logging()
            assert (tmp_path / "log" / "condbalance_debug.log").exists()
            assert logging.getLogger("condbalance").level == logging.DEBUG
        finally:
            logger = logging.getLogger("condbalance")
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
            logger.setLevel(logging.NOTSET)

    def test_create_app(self, runner):
        app = runner.create_app()

        assert app is server.app
        assert isinstance(server.service.balancer, Balancer)
        assert server.service.balancer.nconditions == 2
        assert server.service.cors_origins == "*"

    def test_store_created_in_study_directory(self, runner, tmp_path):
        runner.create_balancer()
        assert (tmp_path / "conditions.db").exists()

    def test_set_port(self, runner):
        runner.set_port(port=find_free_port(40123))
        assert runner.port >= 40123

    def test_startup_message(self, runner, capsys):
        runner.create_balancer()
        runner.port = 3001
        runner.print_startup_message()

        err = capsys.readouterr().err
        assert "Balancing 2 conditions" in err
        assert "http://127.0.0.1:3001" in err


class TestHelper:
    def test_occupied_port(self):
        s = socket.socket()
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]

        try:
            assert not socket_checker(port)
            assert find_free_port(port) != port
        finally:
            s.close()
