#!/usr/bin/env python3
"""
Command Line Integration Tests

Runs the maintenance commands against a temporary SQLite file.
"""

import os
import tempfile
import unittest

from sqlalchemy import inspect

from evbooking.config import Settings
from evbooking.main import build_parser, create_platform, main

from . import BACKOFFICE, TestDataGenerator


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        directory = tempfile.TemporaryDirectory()
        self.addCleanup(directory.cleanup)
        self.database_url = f"sqlite:///{os.path.join(directory.name, 'cli.db')}"
        self.config_path = os.path.join(directory.name, "settings.yaml")
        self.write_config(f"database_url: {self.database_url}\nlog_level: WARNING\n")

    def write_config(self, text):
        with open(self.config_path, "w", encoding="utf-8") as handle:
            handle.write(text)

    def open_platform(self):
        platform = create_platform(Settings(database_url=self.database_url))
        self.addCleanup(platform.close)
        return platform

    def test_init_db_creates_tables(self):
        self.assertEqual(main(["--config", self.config_path, "init-db"]), 0)

        platform = self.open_platform()
        tables = set(inspect(platform.engine).get_table_names())
        self.assertTrue({"stations", "slots", "bookings", "verification_tokens"} <= tables)

    def test_extend_slots_fills_longer_horizon(self):
        platform = self.open_platform()
        station = platform.stations.create_station(BACKOFFICE, TestDataGenerator.station_config()).data
        before = len(platform.stations.list_slots(BACKOFFICE, station.id).data)

        self.assertEqual(main(["--config", self.config_path, "extend-slots", "--days", "10"]), 0)

        after = len(platform.stations.list_slots(BACKOFFICE, station.id).data)
        self.assertGreater(after, before)

    def test_extend_slots_on_empty_database(self):
        self.assertEqual(main(["--config", self.config_path, "extend-slots"]), 0)

    def test_extend_slots_rejects_empty_horizon(self):
        self.assertEqual(main(["--config", self.config_path, "extend-slots", "--days", "0"]), 1)

    def test_invalid_settings_file_exits_with_error(self):
        self.write_config("database_url: sqlite://\nslot_horizon_days: 3\n")
        self.assertEqual(main(["--config", self.config_path, "init-db"]), 2)

        self.write_config("database: sqlite://\n")
        self.assertEqual(main(["--config", self.config_path, "init-db"]), 2)

    def test_command_is_required(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])


if __name__ == '__main__':
    unittest.main()
