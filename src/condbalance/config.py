"""
Provides configuration handling for condbalance.
"""


import os
import platform
from configparser import ConfigParser, SectionProxy
from importlib import resources
from pathlib import Path

from . import files


class BalancerConfig(ConfigParser):
    """
    Provides basic functionality for condbalance configuration.

    Args:
        expdir: Path to the study directory.
        config_objects: A list of dictionaries and/or strings with
            configuration in ini format. Defaults to `None`.
        **kwargs, inline_comment_prefixes: Keyword arguments that are passed on to
            :class:`configparser.ConfigParser`

    Notes:
        This is a child class of :class:`configparser.ConfigParser`.
        Configuration is read from the following locations, later
        sources overriding earlier ones:

        1. The defaults shipped with condbalance
        2. ``/etc/condbalance/condbalance.conf`` (Linux and macOS only)
        3. ``condbalance.conf`` in the user's home directory
        4. The file named by the environment variable in :attr:`env_location`
        5. ``config.conf`` in the study directory
        6. The *config_objects*, in the order they are given
    """

    #: Environment variable key that corresponds to a
    #: full filepath (including filename) to a configuration file.
    env_location = "CONDBALANCE_CONFIG_FILE"

    #: Name of the packaged default file and the library-wide files.
    global_config_name = "condbalance.conf"

    #: Name of the study-specific configuration file.
    exp_config_name = "config.conf"

    def __init__(self, expdir: str = None, config_objects: list = None, inline_comment_prefixes: str = ("#"), **kwargs):
        super().__init__(inline_comment_prefixes=inline_comment_prefixes, **kwargs)

        self._config_objects = config_objects if config_objects is not None else []

        self._config_files = []
        self.expdir = Path(expdir) if expdir is not None else Path.cwd()
        self._parse_config()

    def _collect_config_files(self):
        files = []

        if platform.system() in ["Linux", "Darwin"]:
            files.append(Path("/etc/condbalance").joinpath(self.global_config_name))

        files.append(Path.home().joinpath(self.global_config_name))
        files.append(os.getenv(self.env_location))
        files.append(self.expdir.joinpath(self.exp_config_name))

        self._config_files = [str(p) for p in files if p is not None]

    def _parse_config(self):
        default = resources.files(files).joinpath(self.global_config_name)
        self.read_string(default.read_text(encoding="utf-8"))

        self._collect_config_files()
        self.read(self._config_files, encoding="utf-8")

        for obj in self._config_objects:
            if not isinstance(obj, (str, dict)):
                raise TypeError("Config objects must be list of strings or dictionaries.")

            if isinstance(obj, dict):
                self.read_dict(obj)
            else:
                self.read_string(obj)

    def as_dict(self) -> dict:
        """
        Converts the ConfigParser structure into a nested dict.

        Returns:
            dict: A dictionary representation of the parser instance.
        """
        return {section_name: dict(self[section_name]) for section_name in self.sections()}

    def get_section(self, name: str) -> SectionProxy:
        """
        Returns a section of the parser, or `None` if it does not exist.
        """
        try:
            return self[name]
        except KeyError:
            return None

    def subpath(self, path: str) -> Path:
        """
        Returns *path* as an absolute path. Relative paths are
        interpreted relative to the study directory.
        """
        p = Path(path)
        if p.is_absolute():
            return p
        return (self.expdir / p).resolve()


class BalancerSecrets(BalancerConfig):
    """
    Provides functionality for parsing secret config, e.g. DB credentials.

    Behaves exactly like :class:`BalancerConfig`, but reads ``secrets.conf``
    files and the environment variable ``CONDBALANCE_SECRETS_FILE``.
    """

    env_location = "CONDBALANCE_SECRETS_FILE"
    global_config_name = "secrets.conf"
    exp_config_name = "secrets.conf"
