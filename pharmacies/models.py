from decimal import Decimal

from django.conf import settings
from django.db import models


class Pharmacy(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending approval'
        APPROVED = 'approved', 'Approved'
        REJECTED = 'rejected', 'Rejected'

    owner = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name='pharmacy',
        blank=True,
        null=True,
    )
    name = models.CharField(max_length=255, db_index=True)
    address = models.TextField()
    phone = models.CharField(max_length=20, blank=True, null=True)
    email = models.EmailField(blank=True, default='')
    opening_time = models.TimeField(blank=True, null=True)
    closing_time = models.TimeField(blank=True, null=True)
    latitude = models.DecimalField(max_digits=10, decimal_places=8, blank=True, null=True)
    longitude = models.DecimalField(max_digits=11, decimal_places=8, blank=True, null=True)
    rating = models.DecimalField(max_digits=2, decimal_places=1, default=Decimal('0.0'))
    # Only approved pharmacies show up in public listings and search
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        verbose_name = 'Pharmacy'
        verbose_name_plural = 'Pharmacies'
        indexes = [
            models.Index(fields=['latitude', 'longitude'], name='location_idx'),
        ]

    def __str__(self):
        return self.name

    @property
    def is_approved(self):
        return self.status == self.Status.APPROVED

    def is_owned_by(self, user):
        return user is not None and self.owner_id is not None and self.owner_id == user.pk


class Medicine(models.Model):
    name = models.CharField(max_length=255, db_index=True)
    generic_name = models.CharField(max_length=255, blank=True, default='', db_index=True)
    brand = models.CharField(max_length=255, blank=True, default='')
    category = models.CharField(max_length=100, blank=True, default='', db_index=True)
    dosage_form = models.CharField(max_length=100, blank=True, default='')
    strength = models.CharField(max_length=100, blank=True, default='')
    description = models.TextField(blank=True, default='')
    requires_prescription = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        verbose_name = 'Medicine'
        verbose_name_plural = 'Medicines'

    def __str__(self):
        if self.strength:
            return f'{self.name} {self.strength}'
        return self.name


class PharmacyInventory(models.Model):
    """A medicine listed for sale by one pharmacy, with its own price and stock."""

    pharmacy = models.ForeignKey(Pharmacy, on_delete=models.CASCADE, related_name='inventory')
    medicine = models.ForeignKey(Medicine, on_delete=models.CASCADE, related_name='inventory')
    stock = models.PositiveIntegerField(default=0, db_index=True)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    availability = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Inventory listing'
        verbose_name_plural = 'Inventory listings'
        constraints = [
            models.UniqueConstraint(fields=['pharmacy', 'medicine'], name='unique_listing_per_pharmacy'),
        ]

    def __str__(self):
        return f'{self.medicine.name} at {self.pharmacy.name}'

    @property
    def is_purchasable(self):
        return self.availability and self.stock > 0 and self.pharmacy.is_approved
