"""
Point-of-sale API client.

POSClient is the contract the loyalty services depend on; SquareClient
implements it over the Square REST API. Clients are resolved per tenant
through extensions.pos_clients and passed into services explicitly.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Iterable

import httpx
from flask import current_app, has_app_context

from ..utils.exceptions import POSError, ConfigurationError

logger = logging.getLogger(__name__)


class POSClient(ABC):
    """
    Customer-group and discount primitives plus the order lookups used by
    catch-up and customer resolution.
    """

    @abstractmethod
    def create_customer_group(self, name: str, idempotency_key: str) -> str:
        """Create a customer group and return its id."""

    @abstractmethod
    def add_customer_to_group(self, customer_id: str, group_id: str) -> None:
        ...

    @abstractmethod
    def remove_customer_from_group(self, customer_id: str, group_id: str) -> None:
        ...

    @abstractmethod
    def delete_customer_group(self, group_id: str) -> None:
        ...

    @abstractmethod
    def create_reward_discount(
        self,
        reward_id: int,
        offer_name: str,
        group_id: str,
        variation_ids: List[str],
        max_amount_cents: int,
    ) -> Dict[str, str]:
        """
        Create a 100% discount scoped to the variations and customer group.

        Returns:
            Dict with discount_id, product_set_id, pricing_rule_id
        """

    @abstractmethod
    def delete_catalog_objects(self, object_ids: List[str]) -> None:
        ...

    @abstractmethod
    def retrieve_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def search_completed_orders(
        self,
        location_ids: List[str],
        start_at: str,
        end_at: str,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_customer_id_for_order(self, order_id: str) -> Optional[str]:
        """Customer identifier from loyalty events recorded against the order."""


class SquareClient(POSClient):
    """
    Client for the Square REST API.

    Any non-2xx response raises POSError, except that deletes treat 404 as
    already deleted.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = 'https://connect.squareup.com',
        api_version: str = '2025-01-16',
        timeout: float = 15.0,
        currency: str = 'USD',
    ):
        if not access_token:
            raise ConfigurationError('Square access token is required')
        self.access_token = access_token
        self.base_url = base_url.rstrip('/')
        self.api_version = api_version
        self.timeout = timeout
        self.currency = currency

    @classmethod
    def for_tenant(cls, tenant_id: int) -> 'SquareClient':
        """Build a client from the tenant's stored credentials and app config."""
        from ..models.tenant import Tenant
        tenant = Tenant.query.get(tenant_id)
        if not tenant:
            raise ConfigurationError(f"Tenant {tenant_id} not found")
        if not tenant.square_access_token:
            raise ConfigurationError(f"Tenant {tenant_id} missing Square credentials")

        config = current_app.config if has_app_context() else {}
        return cls(
            tenant.square_access_token,
            base_url=config.get('SQUARE_BASE_URL', 'https://connect.squareup.com'),
            api_version=config.get('SQUARE_API_VERSION', '2025-01-16'),
            timeout=config.get('POS_HTTP_TIMEOUT', 15.0),
        )

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict] = None,
        allow_not_found: bool = False,
    ) -> Dict[str, Any]:
        """Execute a Square API request."""
        headers = {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json',
            'Square-Version': self.api_version,
        }
        url = f'{self.base_url}{path}'

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise POSError(f"Square request {method} {path} failed: {e}", original_error=e)

        if response.status_code == 404 and allow_not_found:
            logger.debug(f"Square {method} {path} returned 404, treating as already removed")
            return {}

        if response.status_code >= 400:
            try:
                errors = response.json().get('errors', [])
            except ValueError:
                errors = response.text
            raise POSError(
                f"Square API error {response.status_code} on {method} {path}: {errors}",
                status_code=response.status_code
            )

        return response.json() if response.content else {}

    # ==================== Customer groups ====================

    def create_customer_group(self, name: str, idempotency_key: str) -> str:
        result = self._request('POST', '/v2/customers/groups', {
            'idempotency_key': idempotency_key,
            'group': {'name': name[:255]},
        })
        group_id = result.get('group', {}).get('id')
        if not group_id:
            raise POSError('Square did not return a customer group id')
        return group_id

    def add_customer_to_group(self, customer_id: str, group_id: str) -> None:
        self._request('PUT', f'/v2/customers/{customer_id}/groups/{group_id}')

    def remove_customer_from_group(self, customer_id: str, group_id: str) -> None:
        self._request('DELETE', f'/v2/customers/{customer_id}/groups/{group_id}', allow_not_found=True)

    def delete_customer_group(self, group_id: str) -> None:
        self._request('DELETE', f'/v2/customers/groups/{group_id}', allow_not_found=True)

    # ==================== Catalog discounts ====================

    def create_reward_discount(
        self,
        reward_id: int,
        offer_name: str,
        group_id: str,
        variation_ids: List[str],
        max_amount_cents: int,
    ) -> Dict[str, str]:
        discount_ref = f'#loyalty-discount-{reward_id}'
        product_set_ref = f'#loyalty-productset-{reward_id}'
        pricing_rule_ref = f'#loyalty-pricingrule-{reward_id}'

        objects = [
            {
                'type': 'DISCOUNT',
                'id': discount_ref,
                'discount_data': {
                    'name': f'Loyalty: {offer_name} (Reward {reward_id})',
                    'discount_type': 'FIXED_PERCENTAGE',
                    'percentage': '100',
                    'maximum_amount_money': {'amount': int(max_amount_cents), 'currency': self.currency},
                    'modify_tax_basis': 'MODIFY_TAX_BASIS',
                },
            },
            {
                'type': 'PRODUCT_SET',
                'id': product_set_ref,
                'product_set_data': {
                    'name': f'Loyalty Products: {offer_name}',
                    'product_ids_any': list(variation_ids),
                    'quantity_exact': 1,
                },
            },
            {
                'type': 'PRICING_RULE',
                'id': pricing_rule_ref,
                'pricing_rule_data': {
                    'name': f'Loyalty Rule: {offer_name}',
                    'discount_id': discount_ref,
                    'match_products_id': product_set_ref,
                    'customer_group_ids_any': [group_id],
                    'exclude_strategy': 'LEAST_EXPENSIVE',
                },
            },
        ]

        result = self._request('POST', '/v2/catalog/batch-upsert', {
            'idempotency_key': f'loyalty-discount-batch-{reward_id}',
            'batches': [{'objects': objects}],
        })

        mappings = {m.get('client_object_id'): m.get('object_id') for m in result.get('id_mappings', [])}
        ids = {
            'discount_id': mappings.get(discount_ref),
            'product_set_id': mappings.get(product_set_ref),
            'pricing_rule_id': mappings.get(pricing_rule_ref),
        }
        if not all(ids.values()):
            created = [v for v in ids.values() if v]
            if created:
                self.delete_catalog_objects(created)
            raise POSError(f"Square batch upsert returned incomplete id mappings: {mappings}")
        return ids

    def delete_catalog_objects(self, object_ids: List[str]) -> None:
        ids = [i for i in object_ids if i]
        if not ids:
            return
        self._request('POST', '/v2/catalog/batch-delete', {'object_ids': ids}, allow_not_found=True)

    # ==================== Orders ====================

    def retrieve_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        result = self._request('GET', f'/v2/orders/{order_id}', allow_not_found=True)
        return result.get('order')

    def search_completed_orders(
        self,
        location_ids: List[str],
        start_at: str,
        end_at: str,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """Completed orders closed in [start_at, end_at], paging until limit."""
        orders = []
        cursor = None
        while len(orders) < limit:
            body = {
                'location_ids': list(location_ids),
                'limit': min(100, limit - len(orders)),
                'query': {
                    'filter': {
                        'state_filter': {'states': ['COMPLETED']},
                        'date_time_filter': {'closed_at': {'start_at': start_at, 'end_at': end_at}},
                    },
                    'sort': {'sort_field': 'CLOSED_AT', 'sort_order': 'ASC'},
                },
            }
            if cursor:
                body['cursor'] = cursor
            result = self._request('POST', '/v2/orders/search', body)
            orders.extend(result.get('orders', []))
            cursor = result.get('cursor')
            if not cursor:
                break
        return orders[:limit]

    def get_customer_id_for_order(self, order_id: str) -> Optional[str]:
        result = self._request('POST', '/v2/loyalty/events/search', {
            'query': {'filter': {'order_filter': {'order_id': order_id}}},
            'limit': 30,
        })
        account_ids: Iterable[str] = [
            e.get('loyalty_account_id') for e in result.get('events', []) if e.get('loyalty_account_id')
        ]
        for account_id in account_ids:
            account = self._request(
                'GET', f'/v2/loyalty/accounts/{account_id}', allow_not_found=True
            ).get('loyalty_account', {})
            if account.get('customer_id'):
                return account['customer_id']
        return None
