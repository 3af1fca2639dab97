"""
Tests for order bookkeeping on customers

The campaign audience filters read Customer.last_order and total_orders,
which are kept up to date by the Order post_save signal.
"""
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone

from accounts.models import Customer
from orders.models import Order
from organizations.models import Restaurant


class CustomerActivityTest(TestCase):

    @classmethod
    def setUpTestData(cls):
        cls.owner = User.objects.create_user(username='owner', password='testpass123')
        cls.restaurant = Restaurant.objects.create(name='Cantina', owner=cls.owner)

    def setUp(self):
        self.customer = Customer.objects.create(
            restaurant=self.restaurant, name='Ana', phone='5511912345601'
        )

    def place_order(self, **kwargs):
        return Order.objects.create(customer=self.customer, total_amount=Decimal('42.50'), **kwargs)

    def test_first_order_sets_activity(self):
        order = self.place_order()

        self.customer.refresh_from_db()
        self.assertEqual(self.customer.total_orders, 1)
        self.assertEqual(self.customer.last_order, order.created_at)
        self.assertTrue(self.customer.is_recently_active())

    def test_restaurant_taken_from_customer(self):
        order = self.place_order()
        self.assertEqual(order.restaurant_id, self.restaurant.pk)

    def test_last_order_never_moves_backward(self):
        future = timezone.now() + timedelta(days=1)
        Customer.objects.filter(pk=self.customer.pk).update(last_order=future)

        self.place_order()

        self.customer.refresh_from_db()
        self.assertEqual(self.customer.last_order, future)
        self.assertEqual(self.customer.total_orders, 1)

    def test_updating_an_order_does_not_count_again(self):
        order = self.place_order()
        order.status = 'delivered'
        order.save()

        self.customer.refresh_from_db()
        self.assertEqual(self.customer.total_orders, 1)

    def test_inactive_customer(self):
        old = timezone.now() - timedelta(days=45)
        Customer.objects.filter(pk=self.customer.pk).update(last_order=old)
        self.customer.refresh_from_db()

        self.assertFalse(self.customer.is_recently_active(window_days=30))
        self.assertTrue(self.customer.is_recently_active(window_days=60))
