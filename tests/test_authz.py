"""Role helper tests"""

import os
import sys
import unittest
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import authz


class TestAuthz(unittest.TestCase):

    def setUp(self):
        self.env_patch = mock.patch.dict(os.environ, {})
        self.env_patch.start()
        for name in ("WALLPAPER_ADMIN_PASSWORD", "WALLPAPER_STAFF_PASSWORD"):
            os.environ.pop(name, None)

    def tearDown(self):
        self.env_patch.stop()

    def test_disabled_auth_is_admin(self):
        self.assertFalse(authz.is_auth_enabled())
        self.assertEqual(authz.current_role({}), "admin")
        self.assertTrue(authz.has_role({}, "admin"))

    def test_passwords_map_to_roles(self):
        os.environ["WALLPAPER_ADMIN_PASSWORD"] = "a"
        os.environ["WALLPAPER_STAFF_PASSWORD"] = "s"
        self.assertEqual(authz.check_password("a"), (True, "admin"))
        self.assertEqual(authz.check_password(" s "), (True, "staff"))
        self.assertEqual(authz.check_password("x"), (False, "viewer"))

    def test_session_roles(self):
        os.environ["WALLPAPER_STAFF_PASSWORD"] = "s"
        session = {}
        self.assertEqual(authz.current_role(session), "viewer")
        authz.set_role(session, "STAFF", user="picker")
        self.assertTrue(authz.has_role(session, "staff"))
        self.assertFalse(authz.has_role(session, "admin"))
        self.assertEqual(authz.current_user(session), "picker")

        authz.clear_role(session)
        self.assertEqual(session, {})
        self.assertEqual(authz.current_user(session, {"X-User-Id": "scanner-2"}), "scanner-2")

    def test_unknown_role_is_viewer(self):
        os.environ["WALLPAPER_ADMIN_PASSWORD"] = "a"
        self.assertEqual(authz.current_role({"stock_role": "root"}), "viewer")


if __name__ == '__main__':
    unittest.main()
