from django.core.management.base import BaseCommand

from dispatch.models import Worker
from payment.services.ledger import Ledger


class Command(BaseCommand):
    help = "Refresh each worker's cached wallet balance from the ledger."

    def handle(self, *args, **options):
        changed = 0
        for worker in Worker.objects.select_related("owner"):
            balance = Ledger.available_balance(worker.owner)
            if worker.wallet_balance != balance:
                Worker.objects.filter(id=worker.id).update(wallet_balance=balance)
                changed += 1
        self.stdout.write(self.style.SUCCESS(f"Reconciled {changed} wallet(s)"))
