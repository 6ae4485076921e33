import os
import typing
import logging
from argparse import ArgumentParser
from appdirs import user_data_dir
import yaml
from photosync.error import ConfigReadError, ConfigParseError, ConfigExtensionError

log = logging.getLogger(__name__)


NOT_SET = type('NOT_SET', (object,), {})  # pylint: disable=invalid-name
T = typing.TypeVar('T')


class Setting(typing.Generic[T]):

    def __init__(self, doc: str, default: typing.Optional[T] = None, metavar: typing.Optional[str] = None):
        self.doc = doc
        self.default = default
        self.metavar = metavar

    def __set_name__(self, owner, name):
        self.name = name  # pylint: disable=attribute-defined-outside-init

    @property
    def cli_name(self):
        return f"--{self.name.replace('_', '-')}"

    def __get__(self, obj: typing.Optional['BaseConfig'], owner) -> T:
        if obj is None:
            return self
        for location in obj.search_order:
            if self.name in location:
                return location[self.name]
        return self.default

    def __set__(self, obj: 'BaseConfig', val: T):
        self.validate(val)
        obj.runtime[self.name] = val

    def validate(self, value):
        raise NotImplementedError()

    def deserialize(self, value):  # pylint: disable=no-self-use
        return value

    def contribute_to_argparse(self, parser: ArgumentParser):
        parser.add_argument(
            self.cli_name,
            help=self.doc,
            metavar=self.metavar,
            default=NOT_SET
        )


class String(Setting[str]):
    def validate(self, value):
        assert isinstance(value, str), \
            f"Setting '{self.name}' must be a string."


class Integer(Setting[int]):
    def validate(self, value):
        assert isinstance(value, int) and not isinstance(value, bool), \
            f"Setting '{self.name}' must be an integer."
        assert value >= 0, f"Setting '{self.name}' cannot be negative."

    def deserialize(self, value):
        return int(value)


class Float(Setting[float]):
    def validate(self, value):
        assert isinstance(value, (int, float)) and not isinstance(value, bool), \
            f"Setting '{self.name}' must be a decimal."
        assert value >= 0, f"Setting '{self.name}' cannot be negative."

    def deserialize(self, value):
        return float(value)


class Path(String):
    def __init__(self, doc: str, *args, default: str = '', **kwargs):
        super().__init__(doc, default, *args, **kwargs)

    def __get__(self, obj, owner) -> str:
        value = super().__get__(obj, owner)
        if isinstance(value, str):
            return os.path.expanduser(os.path.expandvars(value))
        return value


class EnvironmentAccess:
    PREFIX = 'PHOTOSYNC_'

    def __init__(self, config: 'BaseConfig', environ: dict):
        self.configuration = config
        self.data = {}
        if environ:
            self.load(environ)

    def load(self, environ):
        for setting in self.configuration.get_settings():
            value = environ.get(f'{self.PREFIX}{setting.name.upper()}', NOT_SET)
            if value != NOT_SET:
                self.data[setting.name] = setting.deserialize(value)

    def __contains__(self, item: str):
        return item in self.data

    def __getitem__(self, item: str):
        return self.data[item]


class ArgumentAccess:

    def __init__(self, config: 'BaseConfig', args: dict):
        self.configuration = config
        self.args = {}
        if args:
            self.load(args)

    def load(self, args):
        for setting in self.configuration.get_settings():
            value = getattr(args, setting.name, NOT_SET)
            if value != NOT_SET:
                self.args[setting.name] = setting.deserialize(value)

    def __contains__(self, item: str):
        return item in self.args

    def __getitem__(self, item: str):
        return self.args[item]


class ConfigFileAccess:

    def __init__(self, config: 'BaseConfig', path: str):
        self.configuration = config
        self.path = path
        self.data = {}
        if self.exists:
            self.load()

    @property
    def exists(self):
        return self.path and os.path.exists(self.path)

    def load(self):
        cls = type(self.configuration)
        try:
            with open(self.path, 'r') as config_file:
                raw = config_file.read()
        except OSError as err:
            raise ConfigReadError(self.path) from err
        try:
            serialized = yaml.safe_load(raw) or {}
        except yaml.YAMLError as err:
            raise ConfigParseError(self.path) from err
        if not isinstance(serialized, dict):
            raise ConfigParseError(self.path)
        for key, value in serialized.items():
            attr = getattr(cls, key, None)
            if isinstance(attr, Setting):
                self.data[attr.name] = attr.deserialize(value)
            else:
                log.warning("ignoring unknown setting '%s' in %s", key, self.path)

    def __contains__(self, item: str):
        return item in self.data

    def __getitem__(self, item: str):
        return self.data[item]


TBC = typing.TypeVar('TBC', bound='BaseConfig')


class BaseConfig:

    config = Path("Path to configuration file.", metavar='FILE')

    def __init__(self, **kwargs):
        self.runtime = {}      # set internally or by various API calls
        self.arguments = {}    # from command line arguments
        self.environment = {}  # from environment variables
        self.persisted = {}    # from config file
        for key, value in kwargs.items():
            setattr(self, key, value)

    @property
    def search_order(self):
        return [
            self.runtime,
            self.arguments,
            self.environment,
            self.persisted
        ]

    @classmethod
    def get_settings(cls):
        for attr in dir(cls):
            setting = getattr(cls, attr)
            if isinstance(setting, Setting):
                yield setting

    @classmethod
    def create_from_arguments(cls: typing.Type[TBC], args) -> TBC:
        conf = cls()
        conf.set_arguments(args)
        conf.set_environment()
        conf.set_persisted()
        return conf

    @classmethod
    def contribute_to_argparse(cls, parser: ArgumentParser):
        for setting in cls.get_settings():
            setting.contribute_to_argparse(parser)

    def set_arguments(self, args):
        self.arguments = ArgumentAccess(self, args)

    def set_environment(self, environ=None):
        self.environment = EnvironmentAccess(self, environ or os.environ)

    def set_persisted(self, config_file_path=None):
        if config_file_path is None:
            config_file_path = self.config

        if not config_file_path:
            return

        ext = os.path.splitext(config_file_path)[1]
        if ext not in ('.yml', '.yaml'):
            raise ConfigExtensionError(config_file_path)

        self.persisted = ConfigFileAccess(self, config_file_path)


class Config(BaseConfig):
    # directories
    data_dir = Path("Directory path to store photos and logs.", metavar='DIR')

    # network
    udp_port = Integer("UDP port to listen for photo requests and uploads", 4455)
    network_interface = String("Interface to use for the photo exchange", '0.0.0.0')
    server = String("Host name and port of the serving peer", 'localhost:4455', metavar='HOST:PORT')

    # requesting side
    request_throttle = Float(
        "Seconds during which a repeated request for the same photo is suppressed", 2.0
    )
    seen_ping_interval = Integer(
        "Minimum seconds between 'seen' pings sent for the same photo, set to 0 to disable", 300
    )

    # serving side
    prune_interval = Float("Seconds between sweeps of abandoned uploads", 30.0)
    upload_stale_timeout = Float(
        "Seconds an upload may sit idle before its partial data is discarded", 120.0
    )
    max_incoming_transfers = Integer(
        "Maximum number of partially received photos tracked at once, set to 0 for no limit", 64
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.set_default_paths()

    def set_default_paths(self):
        cls = type(self)
        cls.data_dir.default = user_data_dir('photosync')

    def set_persisted(self, config_file_path=None):
        if config_file_path is None:
            config_file_path = self.config or os.path.join(self.data_dir, 'photosync.yml')
        super().set_persisted(config_file_path)

    @property
    def photos_dir(self):
        return os.path.join(self.data_dir, 'photos')

    @property
    def log_file_path(self):
        return os.path.join(self.data_dir, 'photosync.log')

    @property
    def server_host(self):
        return self.server.rsplit(':', 1)[0]

    @property
    def server_port(self):
        return int(self.server.rsplit(':', 1)[1])
