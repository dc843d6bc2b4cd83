from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class MetadataPageNumberPagination(PageNumberPagination):
    """
    Page-number pagination that also reports the page count and position,
    so clients can render pagers without extra requests.
    """
    page_size_query_param = 'page_size'

    def get_paginated_response(self, data):
        return Response({
            'count': self.page.paginator.count,
            'total_pages': self.page.paginator.num_pages,
            'current_page': self.page.number,
            'page_size': self.page.paginator.per_page,
            'next': self.get_next_link(),
            'previous': self.get_previous_link(),
            'results': data
        })


class StandardResultsSetPagination(MetadataPageNumberPagination):
    page_size = 20
    max_page_size = 100


class LargeResultsSetPagination(MetadataPageNumberPagination):
    """Pagination for long catalogue lists (medicines, inventory)."""
    page_size = 50
    max_page_size = 200
