import sys
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from main import build_parser, main
from utils.config import DEFAULTS, load_config
from utils.errors import ConfigError

CONFIG_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), '../config/config.yaml'))


class TestLoadConfig(unittest.TestCase):
    def write(self, content):
        handle = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False)
        handle.write(content)
        handle.close()
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_shipped_config_loads_with_env(self):
        env = {'DATABASE_URL': 'sqlite://', 'REDIS_HOST': 'cache', 'SMTP_HOST': 'smtp.example.com'}
        with patch.dict(os.environ, env, clear=False):
            config = load_config(CONFIG_PATH)

        self.assertEqual(config['database']['url'], 'sqlite://')
        self.assertEqual(config['redis']['host'], 'cache')
        self.assertEqual(config['notifications']['smtp']['host'], 'smtp.example.com')
        self.assertEqual(config['queues']['notifications'], 'alert-notifications')

    def test_unset_variables_keep_defaults(self):
        path = self.write('database:\n  url: ${LOGWARD_TEST_UNSET_URL}\nscheduler:\n  interval_seconds: 15\n')
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('LOGWARD_TEST_UNSET_URL', None)
            config = load_config(path)

        self.assertEqual(config['database']['url'], DEFAULTS['database']['url'])
        self.assertEqual(config['scheduler']['interval_seconds'], 15)
        self.assertTrue(config['scheduler']['run_on_start'])

    def test_empty_file_is_all_defaults(self):
        self.assertEqual(load_config(self.write('')), DEFAULTS)

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_config('/nonexistent/config.yaml')

    def test_invalid_yaml(self):
        with self.assertRaises(ConfigError):
            load_config(self.write('database: [unclosed'))

    def test_non_mapping(self):
        with self.assertRaises(ConfigError):
            load_config(self.write('- a\n- b\n'))


class TestCommandLine(unittest.TestCase):
    def test_import_rule_arguments(self):
        args = build_parser().parse_args([
            '--config', 'custom.yaml', 'import-rule', 'rule.yml', '--org', 'org-1',
            '--email', 'a@example.com', '--email', 'b@example.com', '--create-alert-rule',
        ])
        self.assertEqual(args.config, 'custom.yaml')
        self.assertEqual(args.command, 'import-rule')
        self.assertEqual(args.org, 'org-1')
        self.assertIsNone(args.project)
        self.assertEqual(args.email, ['a@example.com', 'b@example.com'])
        self.assertTrue(args.create_alert_rule)

    def test_command_is_required(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])

    def test_import_rule_command(self):
        workdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, workdir, True)
        db_path = os.path.join(workdir, 'logward.db')
        config_path = self.write(f'database:\n  url: sqlite:///{db_path}\nlogging:\n  level: WARNING\n')
        rule_path = os.path.join(os.path.dirname(CONFIG_PATH), 'rules', 'failed_ssh_login.yml')

        exit_code = main(['--config', config_path, 'import-rule', rule_path, '--org', 'org-1'])

        self.assertEqual(exit_code, 0)
        self.assertTrue(os.path.exists(db_path))

    def test_import_rule_command_rejects_invalid_rule(self):
        config_path = self.write('database:\n  url: "sqlite://"\n')
        rule_path = self.write('title: nothing else\n')

        self.assertEqual(main(['--config', config_path, 'import-rule', rule_path, '--org', 'org-1']), 1)

    def write(self, content):
        handle = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False)
        handle.write(content)
        handle.close()
        self.addCleanup(os.unlink, handle.name)
        return handle.name


if __name__ == '__main__':
    unittest.main()
