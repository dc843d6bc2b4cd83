from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from pharmacies.models import Pharmacy


class Command(BaseCommand):
    help = 'Creates a new pharmacy, optionally owned by an existing user'

    def add_arguments(self, parser):
        parser.add_argument('name', type=str, help='The name of the pharmacy')
        parser.add_argument('address', type=str, help='The address of the pharmacy')
        parser.add_argument('--owner', type=str, help='Username of the pharmacy account')
        parser.add_argument('--phone', type=str, default='', help='Contact phone number')
        parser.add_argument('--approve', action='store_true', help='Approve the pharmacy right away')

    def handle(self, *args, **options):
        owner = None
        if options['owner']:
            User = get_user_model()
            try:
                owner = User.objects.get(username=options['owner'])
            except User.DoesNotExist:
                raise CommandError(f"User '{options['owner']}' does not exist")
            if Pharmacy.objects.filter(owner=owner).exists():
                raise CommandError(f"User '{owner.username}' already owns a pharmacy")

        pharmacy = Pharmacy.objects.create(
            name=options['name'],
            address=options['address'],
            phone=options['phone'] or None,
            owner=owner,
            status=Pharmacy.Status.APPROVED if options['approve'] else Pharmacy.Status.PENDING,
        )

        self.stdout.write(self.style.SUCCESS(
            f'Successfully created pharmacy "{pharmacy.name}" with ID: {pharmacy.id} ({pharmacy.status})'
        ))
