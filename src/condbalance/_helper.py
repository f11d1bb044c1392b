# -*- coding: utf-8 -*-

"""
_helper contains internal functions which are not to be called by users.
"""

import socket


def socket_checker(port: int, host: str = "127.0.0.1") -> bool:
    """Returns *True*, if *port* is free on *host*."""
    s = socket.socket()
    try:
        s.bind((host, port))
        s.listen(1)
        return True
    except OSError:
        return False
    finally:
        s.close()


def find_free_port(start: int, host: str = "127.0.0.1", tries: int = 100) -> int:
    """Returns the first free port, starting at *start*."""
    for port in range(start, start + tries):
        if socket_checker(port, host):
            return port
    raise RuntimeError(f"No free port found in range {start}-{start + tries - 1}.")
