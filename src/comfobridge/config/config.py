import logging
import os
import platform

from configobj import ConfigObj, ConfigObjError, Section, flatten_errors
from configobj.validate import Validator

from comfobridge.settings import Settings

logger = logging.getLogger(__name__)

# The default extension for configuration files
config_extension = '.cfg'

# the schema used when the config directory does not provide one
default_schema = os.path.join(os.path.dirname(__file__), 'comfobridge.schema' + config_extension)


def config_flavor(name, flavor=None):
    configname = name if not flavor else name + '.' + flavor
    return configname


def config_filename(name, directory=None):
    """
    Determines the location of a config file in the given directory.
    """
    config_file = os.path.join(directory, name + config_extension)
    return config_file


def load_config_file_base(file, must_exist=True):
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation='Template', file_error=must_exist) \
            if must_exist or os.path.exists(file) else ConfigObj()
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, subpart=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The configuration file is expected to be named
    after the base, followed by a period and then the specialization, if the specialization is given,
    otherwise just the base name.
    :param name:    The name of the base configuration
    :param subpart: The name of the specialization.
    :return: The ConfigObj for the configuration file, empty when the file does not exist.
    """
    configname = config_flavor(name, subpart)
    file = config_filename(configname, directory)
    return load_config_file_base(file, False)


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def schema_file(name, directory):
    """ the schema named after the configuration, or the packaged schema """
    file = config_filename(config_flavor(name, 'schema'), directory)
    return file if os.path.exists(file) else default_schema


def load_config(name, directory):
    """
        Loads all the configuration files that relate to the given name.
        Configurations are loaded in this order, later files overriding earlier ones:
        - the default specialization
        - the platform specialization
        - the user override in the home directory
        - the base configuration
        The configurations are flattened into a single configuration, and then validated
        against the "schema" specialization, converting values to their declared types.
    :param name: the base name of the configuration files
    :param directory: the location of the configuration files
    :return: the validated configuration
    :raises ConfigObjError: when the merged configuration does not validate
    """
    default_config = config_flavor_file(name, directory, 'default')
    platform_config = config_flavor_file(name, directory, os_name())
    user_config = load_config_file_base(os.path.expanduser('~/' + name + config_extension), must_exist=False)
    local_config = config_flavor_file(name, directory)

    config = ConfigObj(configspec=schema_file(name, directory))
    config.merge(default_config)
    config.merge(platform_config)
    config.merge(user_config)
    config.merge(local_config)

    result = config.validate(Validator())
    if result is not True:
        failures = []
        for sections, key, _ in flatten_errors(config, result):
            failures.append('.'.join(sections + [key]) if key is not None else '[%s]' % ', '.join(sections))
        raise ConfigObjError("the config file %s failed validation %s" % (name, ', '.join(failures)))
    logger.debug("loaded configuration %s from %s" % (name, directory))
    return config


def fetch_conf_path(conf: Section, path):
    """
    Retrieves the named configuration section
    :param conf:        The root configuration
    :param path:        An iterable that lists the names of the sections to resolve
    :return: The configuration section identified by the path, or None
    """
    for p in path:    # lookup specific section
        conf = conf.get(p, None)
        if conf is None:
            return
    return conf


def settings_from_config(conf: Section) -> Settings:
    bridge = fetch_conf_path(conf, ['bridge'])
    return Settings(bridge['local_uuid'], bridge['remote_uuid'], bridge['address'], port=bridge['port'],
                    multicast_group=bridge['multicast'], verbose=bridge['verbose'], debug=bridge['debug'])


def load_settings(name, directory) -> Settings:
    """
    Builds bridge settings from the [bridge] section of the configuration.
    Identities are given in hex.
    :raises ConfigObjError: when the configuration does not validate
    :raises ValueError: when an identity is malformed, or a remote identity is given without an address
    """
    return settings_from_config(load_config(name, directory))


def load_connection_options(name, directory) -> dict:
    """
    Retrieves the [connection] timing options, as keyword arguments for Bridge.
    """
    connection = fetch_conf_path(load_config(name, directory), ['connection'])
    return {key: connection[key] for key in ('idle_timeout', 'keepalive', 'connect_timeout')}
