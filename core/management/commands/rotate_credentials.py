"""
Management command: python manage.py rotate_credentials

Re-encrypts every stored credential under the active
CREDENTIALS_ENCRYPTION_KEY. Run it after moving the previous key into
CREDENTIALS_ENCRYPTION_OLD_KEYS; once it reports no unreadable values the old
key can be dropped.
"""
from __future__ import annotations

import logging

from cryptography.fernet import InvalidToken
from django.apps import apps
from django.core.management.base import BaseCommand
from django.db import connection, transaction

from core.crypto import rotate_secret
from core.fields import EncryptedCredentialField

logger = logging.getLogger(__name__)


def _credential_columns():
    for model in apps.get_models():
        for field in model._meta.concrete_fields:
            if isinstance(field, EncryptedCredentialField):
                yield model, field


class Command(BaseCommand):
    help = "Re-encrypt stored exchange and market data credentials under the active key."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Count rows that would be rewritten without saving",
        )

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        rotated = 0
        unreadable = 0
        qn = connection.ops.quote_name

        with transaction.atomic():
            for model, field in _credential_columns():
                table = qn(model._meta.db_table)
                column = qn(field.column)
                pk = qn(model._meta.pk.column)
                with connection.cursor() as cursor:
                    # Raw reads: the field itself would hand back plaintext.
                    cursor.execute(f"SELECT {pk}, {column} FROM {table} WHERE {column} <> ''")
                    rows = cursor.fetchall()
                    for row_id, stored in rows:
                        try:
                            fresh = rotate_secret(stored)
                        except InvalidToken:
                            unreadable += 1
                            logger.warning(
                                "%s.%s id=%s: no configured key decrypts this value",
                                model._meta.label,
                                field.name,
                                row_id,
                            )
                            continue
                        rotated += 1
                        if not dry_run:
                            cursor.execute(f"UPDATE {table} SET {column} = %s WHERE {pk} = %s", [fresh, row_id])

        verb = "Would rotate" if dry_run else "Rotated"
        self.stdout.write(f"{verb} {rotated} credential values ({unreadable} unreadable)")
        if unreadable:
            self.stdout.write(self.style.WARNING("Keep the retired keys until the unreadable values are re-entered."))
