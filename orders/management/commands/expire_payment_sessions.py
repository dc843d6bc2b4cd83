from django.core.management.base import BaseCommand

from orders.services import expire_stale_payment_sessions


class Command(BaseCommand):
    help = 'Mark payment sessions left pending past PAYMENT_SESSION_TTL_MINUTES as failed'

    def handle(self, *args, **options):
        expired = expire_stale_payment_sessions()
        self.stdout.write(self.style.SUCCESS(f'{expired} payment session(s) expired'))
