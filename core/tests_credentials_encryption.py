from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import connection
from django.test import TestCase, override_settings

from core.crypto import decrypt_secret, encrypt_secret, is_encrypted_secret, rotate_secret
from core.models import TradingProfile
from scheduling.models import DataSchedulingConfig


class CredentialEncryptionTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("enc", password="x")

    def test_crypto_helpers_roundtrip(self):
        plain = "my-secret-key"
        encrypted = encrypt_secret(plain)
        self.assertTrue(is_encrypted_secret(encrypted))
        self.assertNotEqual(encrypted, plain)
        self.assertEqual(decrypt_secret(encrypted), plain)

    def test_empty_values_stay_empty(self):
        self.assertEqual(encrypt_secret(""), "")
        self.assertEqual(encrypt_secret(None), "")
        self.assertEqual(decrypt_secret(None), "")

    def test_legacy_plaintext_is_readable(self):
        self.assertEqual(decrypt_secret("plain-token"), "plain-token")

    def test_profile_credentials_are_encrypted_at_rest(self):
        profile = TradingProfile.objects.create(
            user=self.user,
            exchange=TradingProfile.Exchange.KRAKEN,
            exchange_api_key="k_plain",
            exchange_api_secret="s_plain",
        )
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT exchange_api_key, exchange_api_secret FROM core_tradingprofile WHERE id = %s",
                [profile.id],
            )
            raw_key, raw_secret = cursor.fetchone()

        self.assertTrue(str(raw_key).startswith("enc::"))
        self.assertTrue(str(raw_secret).startswith("enc::"))
        self.assertNotIn("k_plain", raw_key)

        profile.refresh_from_db()
        self.assertEqual(profile.exchange_api_key, "k_plain")
        self.assertEqual(profile.exchange_api_secret, "s_plain")
        self.assertTrue(profile.has_exchange_credentials)

    def test_scheduling_token_is_encrypted_at_rest(self):
        config = DataSchedulingConfig.objects.create(
            owner=self.user,
            api_url="https://data-api.example.com",
            api_token="tok_plain",
        )
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT api_token FROM scheduling_dataschedulingconfig WHERE id = %s",
                [config.id],
            )
            (raw_token,) = cursor.fetchone()

        self.assertTrue(str(raw_token).startswith("enc::"))
        config.refresh_from_db()
        self.assertEqual(config.api_token, "tok_plain")
        self.assertTrue(config.has_credentials)

    def test_retired_key_still_decrypts_and_rotates(self):
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="old-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=[]):
            stored = encrypt_secret("rotating")
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="new-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=["old-key"]):
            self.assertEqual(decrypt_secret(stored), "rotating")
            rotated = rotate_secret(stored)
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="new-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=[]):
            self.assertEqual(decrypt_secret(rotated), "rotating")
            self.assertEqual(decrypt_secret(stored), "")

    def _raw_profile_key(self, profile):
        with connection.cursor() as cursor:
            cursor.execute("SELECT exchange_api_key FROM core_tradingprofile WHERE id = %s", [profile.id])
            return cursor.fetchone()[0]

    def test_rotate_credentials_command_moves_values_to_active_key(self):
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="old-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=[]):
            profile = TradingProfile.objects.create(user=self.user, exchange_api_key="k_rot", exchange_api_secret="s_rot")
            DataSchedulingConfig.objects.create(owner=self.user, api_token="tok_rot")
        before = self._raw_profile_key(profile)

        out = StringIO()
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="new-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=["old-key"]):
            call_command("rotate_credentials", stdout=out)

        self.assertIn("Rotated 3 credential values (0 unreadable)", out.getvalue())
        self.assertNotEqual(self._raw_profile_key(profile), before)
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="new-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=[]):
            profile.refresh_from_db()
            self.assertEqual(profile.exchange_api_key, "k_rot")
            self.assertEqual(profile.exchange_api_secret, "s_rot")
            self.assertEqual(DataSchedulingConfig.objects.get(owner=self.user).api_token, "tok_rot")

    def test_rotate_credentials_dry_run_and_unreadable_values(self):
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="lost-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=[]):
            profile = TradingProfile.objects.create(user=self.user, exchange_api_key="k_lost")
        before = self._raw_profile_key(profile)

        out = StringIO()
        with override_settings(CREDENTIALS_ENCRYPTION_KEY="new-key", CREDENTIALS_ENCRYPTION_OLD_KEYS=[]):
            with self.assertLogs("core.management.commands.rotate_credentials", "WARNING"):
                call_command("rotate_credentials", "--dry-run", stdout=out)

        self.assertIn("Would rotate 0 credential values (1 unreadable)", out.getvalue())
        self.assertEqual(self._raw_profile_key(profile), before)
