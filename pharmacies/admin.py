from django.contrib import admin

from .models import Medicine, Pharmacy, PharmacyInventory


class PharmacyInventoryInline(admin.TabularInline):
    model = PharmacyInventory
    extra = 0
    autocomplete_fields = ['medicine']


@admin.register(Pharmacy)
class PharmacyAdmin(admin.ModelAdmin):
    list_display = ['name', 'owner', 'status', 'phone', 'rating', 'created_at']
    list_filter = ['status']
    search_fields = ['name', 'address', 'owner__username', 'owner__email']
    inlines = [PharmacyInventoryInline]
    actions = ['approve_pharmacies']

    @admin.action(description='Approve selected pharmacies')
    def approve_pharmacies(self, request, queryset):
        updated = queryset.update(status=Pharmacy.Status.APPROVED)
        self.message_user(request, f'{updated} pharmacy(ies) approved.')


@admin.register(Medicine)
class MedicineAdmin(admin.ModelAdmin):
    list_display = ['name', 'generic_name', 'brand', 'category', 'requires_prescription']
    list_filter = ['category', 'requires_prescription']
    search_fields = ['name', 'generic_name', 'brand']


@admin.register(PharmacyInventory)
class PharmacyInventoryAdmin(admin.ModelAdmin):
    list_display = ['medicine', 'pharmacy', 'stock', 'price', 'availability']
    list_filter = ['availability', 'pharmacy']
    list_select_related = ['medicine', 'pharmacy']
