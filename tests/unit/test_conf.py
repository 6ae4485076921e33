import os
import sys
import types
import tempfile
import unittest
import argparse
from photosync.conf import Config, BaseConfig, String, Integer, Float
from photosync.error import ConfigExtensionError, ConfigParseError


class TestConfig(BaseConfig):
    test_str = String('str help', 'the default')
    test_int = Integer('int help', 9)
    test_float = Float('float help', 2.5)


class ConfigurationTests(unittest.TestCase):

    @unittest.skipIf('linux' not in sys.platform, 'skipping linux only test')
    def test_linux_defaults(self):
        c = Config()
        self.assertEqual(c.data_dir, os.path.expanduser('~/.local/share/photosync'))
        self.assertEqual(c.photos_dir, os.path.expanduser('~/.local/share/photosync/photos'))
        self.assertEqual(c.log_file_path, os.path.expanduser('~/.local/share/photosync/photosync.log'))

    def test_exchange_defaults(self):
        c = Config()
        self.assertEqual(c.udp_port, 4455)
        self.assertEqual(c.network_interface, '0.0.0.0')
        self.assertEqual(c.request_throttle, 2.0)
        self.assertEqual(c.seen_ping_interval, 300)
        self.assertEqual(c.prune_interval, 30.0)
        self.assertEqual(c.upload_stale_timeout, 120.0)
        self.assertEqual(c.max_incoming_transfers, 64)
        self.assertEqual(c.server_host, 'localhost')
        self.assertEqual(c.server_port, 4455)

    def test_server_address(self):
        c = Config(server='10.0.0.2:5000')
        self.assertEqual(c.server_host, '10.0.0.2')
        self.assertEqual(c.server_port, 5000)

    def test_search_order(self):
        c = TestConfig()
        c.runtime = {'test_str': 'runtime'}
        c.arguments = {'test_str': 'arguments'}
        c.environment = {'test_str': 'environment'}
        c.persisted = {'test_str': 'persisted'}
        self.assertEqual(c.test_str, 'runtime')
        c.runtime = {}
        self.assertEqual(c.test_str, 'arguments')
        c.arguments = {}
        self.assertEqual(c.test_str, 'environment')
        c.environment = {}
        self.assertEqual(c.test_str, 'persisted')
        c.persisted = {}
        self.assertEqual(c.test_str, 'the default')

    def test_assignment_goes_to_runtime(self):
        c = TestConfig(test_int=3)
        self.assertDictEqual(c.runtime, {'test_int': 3})
        c.persisted = {'test_int': 7}
        self.assertEqual(c.test_int, 3)
        c.test_float = 0.25
        self.assertEqual(c.runtime['test_float'], 0.25)

    def test_arguments(self):
        parser = argparse.ArgumentParser()
        TestConfig.contribute_to_argparse(parser)

        args = parser.parse_args([])
        c = TestConfig.create_from_arguments(args)
        self.assertEqual(c.test_str, 'the default')
        self.assertEqual(c.test_int, 9)

        args = parser.parse_args(['--test-str', 'blah', '--test-int', '12', '--test-float', '0.5'])
        c = TestConfig.create_from_arguments(args)
        self.assertEqual(c.test_str, 'blah')
        self.assertEqual(c.test_int, 12)
        self.assertEqual(c.test_float, 0.5)

    def test_environment(self):
        c = TestConfig()

        self.assertEqual(c.test_str, 'the default')
        c.set_environment({'PHOTOSYNC_TEST_STR': 'from environ'})
        self.assertEqual(c.test_str, 'from environ')

        self.assertEqual(c.test_int, 9)
        c.set_environment({'PHOTOSYNC_TEST_INT': '1', 'PHOTOSYNC_TEST_FLOAT': '7'})
        self.assertEqual(c.test_int, 1)
        self.assertEqual(c.test_float, 7.0)

    def test_persisted(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config = os.path.join(temp_dir, 'settings.yml')

            c = TestConfig.create_from_arguments(types.SimpleNamespace(config=config))
            self.assertFalse(c.persisted.exists)
            self.assertEqual(c.test_str, 'the default')

            with open(config, 'w') as fd:
                fd.write('test_str: from file\ntest_int: 4\n')
            c = TestConfig.create_from_arguments(types.SimpleNamespace(config=config))
            self.assertTrue(c.persisted.exists)
            self.assertEqual(c.test_str, 'from file')
            self.assertEqual(c.test_int, 4)

            # environment and runtime both win over the file
            c.set_environment({'PHOTOSYNC_TEST_INT': '5'})
            self.assertEqual(c.test_int, 5)
            c.test_str = 'from runtime'
            self.assertEqual(c.test_str, 'from runtime')
            self.assertEqual(c.persisted['test_str'], 'from file')

    def test_unknown_persisted_setting_is_ignored(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config = os.path.join(temp_dir, 'settings.yml')
            with open(config, 'w') as fd:
                fd.write('not_a_setting: 1\ntest_int: 3\n')
            with self.assertLogs('photosync.conf', level='WARNING'):
                c = TestConfig.create_from_arguments(types.SimpleNamespace(config=config))
            self.assertEqual(c.test_int, 3)
            self.assertNotIn('not_a_setting', c.persisted)

    def test_broken_yaml(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config = os.path.join(temp_dir, 'settings.yml')
            with open(config, 'w') as fd:
                fd.write('test_str: [unclosed\n')
            with self.assertRaises(ConfigParseError):
                TestConfig.create_from_arguments(types.SimpleNamespace(config=config))

    def test_default_config_path_in_data_dir(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            with open(os.path.join(temp_dir, 'photosync.yml'), 'w') as fd:
                fd.write('udp_port: 5001\nrequest_throttle: 0.5\n')
            c = Config.create_from_arguments(types.SimpleNamespace(data_dir=temp_dir))
            self.assertEqual(c.udp_port, 5001)
            self.assertEqual(c.request_throttle, 0.5)

    def test_validation(self):
        c = TestConfig()
        with self.assertRaisesRegex(AssertionError, 'must be a string'):
            c.test_str = 9
        with self.assertRaisesRegex(AssertionError, 'must be an integer'):
            c.test_int = 'hi'
        with self.assertRaisesRegex(AssertionError, 'must be an integer'):
            c.test_int = True
        with self.assertRaisesRegex(AssertionError, 'cannot be negative'):
            c.test_int = -1
        with self.assertRaisesRegex(AssertionError, 'must be a decimal'):
            c.test_float = 'hi'
        self.assertDictEqual(c.runtime, {})

    def test_file_extension_validation(self):
        with self.assertRaises(ConfigExtensionError):
            TestConfig.create_from_arguments(
                types.SimpleNamespace(config=os.path.join('settings.json'))
            )
