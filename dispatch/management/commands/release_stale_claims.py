from django.conf import settings
from django.core.management.base import BaseCommand

from dispatch.services import DispatchService


class Command(BaseCommand):
    help = "Return orders that were claimed but never picked up to the worker pool."

    def add_arguments(self, parser):
        parser.add_argument(
            "--minutes",
            type=int,
            default=settings.DISPATCH_CLAIM_TTL_MINUTES,
            help="Claims older than this many minutes are released.",
        )

    def handle(self, *args, **options):
        released = DispatchService().release_expired_claims(minutes=options["minutes"])
        self.stdout.write(self.style.SUCCESS(f"Released {len(released)} stale claim(s)"))
