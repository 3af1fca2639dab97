"""
Tests for WhatsApp delivery

Covers:
- Phone normalization
- Gateway request format and error classification
- Message log and engagement side effects
- Ad-hoc send view
"""
from unittest.mock import Mock, patch

import requests
from django.contrib.auth.models import User
from django.test import TestCase, Client
from django.urls import reverse

from accounts.models import Customer
from organizations.models import Restaurant
from messaging.models import MessageLog, EngagementMetric
from messaging.whatsapp_service import (
    WhatsAppService, SendResult, ErrorCategory,
    ChannelTransientError, ChannelNonRecoverableError,
    normalize_phone, classify_status, send_to_customer,
)


def fake_service(*results):
    service = Mock()
    service.VIA = MessageLog.VIA_EVOLUTION
    service.send.side_effect = list(results)
    return service


def gateway_response(status_code=201, payload=None, content_type='application/json'):
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.headers = {'content-type': content_type}
    response.json.return_value = payload if payload is not None else {}
    response.text = str(payload)
    return response


class PhoneAndClassificationTest(TestCase):

    def test_normalize_phone(self):
        self.assertEqual(normalize_phone('+55 (11) 91234-5678'), '5511912345678')
        self.assertEqual(normalize_phone(None), '')

    def test_classify_status(self):
        for code in (408, 425, 429, 500, 502, 503):
            with self.subTest(code=code):
                self.assertIs(classify_status(code), ChannelTransientError)
        for code in (400, 401, 403, 404, 422):
            with self.subTest(code=code):
                self.assertIs(classify_status(code), ChannelNonRecoverableError)

    def test_error_carries_category(self):
        error = ChannelTransientError('Service Unavailable', status_code=503)
        self.assertTrue(error.is_transient)
        self.assertIs(error.category, ErrorCategory.TRANSIENT)
        self.assertEqual(str(error), 'Service Unavailable (HTTP 503)')
        self.assertFalse(ChannelNonRecoverableError('bad').is_transient)


class WhatsAppServiceTest(TestCase):

    def setUp(self):
        self.session = Mock()
        self.service = WhatsAppService(
            base_url='https://evo.example.com/',
            token='secret-token',
            instance_name='main',
            timeout=5,
            session=self.session,
        )

    def test_success_posts_evolution_payload(self):
        self.session.post.return_value = gateway_response(201, {'key': {'id': 'ABC123'}})

        result = self.service.send('+55 11 91234-5678', 'Oi!', media_url='https://cdn.example.com/p.jpg')

        self.assertTrue(result.success)
        self.assertEqual(result.message_id, 'ABC123')
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], 'https://evo.example.com/message/sendText/main')
        self.assertEqual(kwargs['json'], {
            'number': '5511912345678',
            'text': 'Oi!',
            'mediaUrl': 'https://cdn.example.com/p.jpg',
        })
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer secret-token')
        self.assertEqual(kwargs['timeout'], 5)

    def test_message_id_fallbacks(self):
        self.session.post.return_value = gateway_response(200, {'messageId': 'XYZ'})
        self.assertEqual(self.service.send('5511912345678', 'Oi').message_id, 'XYZ')

    def test_instance_override(self):
        self.session.post.return_value = gateway_response(201, {'key': {'id': '1'}})
        self.service.send('5511912345678', 'Oi', instance_name='cantina')
        self.assertTrue(self.session.post.call_args[0][0].endswith('/sendText/cantina'))

    def test_server_error_is_transient(self):
        self.session.post.return_value = gateway_response(503, {'message': 'Service Unavailable'})

        result = self.service.send('5511912345678', 'Oi')

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, ChannelTransientError)
        self.assertEqual(result.error.status_code, 503)
        self.assertEqual(result.error.message, 'Service Unavailable')

    def test_rate_limit_is_transient(self):
        self.session.post.return_value = gateway_response(429, {})
        result = self.service.send('5511912345678', 'Oi')
        self.assertTrue(result.error.is_transient)
        self.assertEqual(result.error.message, 'Gateway returned HTTP 429')

    def test_bad_request_is_non_recoverable(self):
        self.session.post.return_value = gateway_response(400, {'error': 'number does not exist'})
        result = self.service.send('5511912345678', 'Oi')
        self.assertIsInstance(result.error, ChannelNonRecoverableError)
        self.assertIn('number does not exist', str(result.error))

    def test_network_errors_are_transient(self):
        for exc in (requests.ConnectionError('refused'), requests.Timeout('slow')):
            with self.subTest(exc=exc):
                self.session.post.side_effect = exc
                result = self.service.send('5511912345678', 'Oi')
                self.assertIsInstance(result.error, ChannelTransientError)

    def test_local_rejections_skip_the_gateway(self):
        unconfigured = WhatsAppService(base_url='', token='', instance_name='', session=self.session)
        cases = [
            (unconfigured, '5511912345678', 'Oi'),
            (self.service, '12-34', 'Oi'),
            (self.service, '5511912345678', '   '),
        ]
        for service, phone, body in cases:
            with self.subTest(phone=phone, body=body):
                result = service.send(phone, body)
                self.assertIsInstance(result.error, ChannelNonRecoverableError)
        self.session.post.assert_not_called()


class SendToCustomerTest(TestCase):

    @classmethod
    def setUpTestData(cls):
        cls.owner = User.objects.create_user(username='owner', password='testpass123')
        cls.restaurant = Restaurant.objects.create(
            name='Cantina', owner=cls.owner, evolution_instance_name='cantina'
        )
        cls.customer = Customer.objects.create(
            restaurant=cls.restaurant, name='Ana', phone='+55 11 91234-5601'
        )

    def test_every_attempt_is_logged_and_counted(self):
        service = fake_service(
            SendResult.ok('wamid-1'),
            SendResult.failed(ChannelTransientError('timeout')),
        )

        send_to_customer(self.customer, 'Oi', template_name='promo', service=service)
        send_to_customer(self.customer, 'Oi de novo', service=service)

        self.assertEqual(service.send.call_args_list[0].kwargs['instance_name'], 'cantina')
        logs = MessageLog.objects.order_by('id')
        self.assertEqual([log.status for log in logs], ['sent', 'failed'])
        self.assertEqual(logs[0].gateway_message_id, 'wamid-1')
        self.assertEqual(logs[0].template_name, 'promo')
        self.assertEqual(logs[1].error_message, 'timeout')
        self.assertEqual(EngagementMetric.objects.get(customer=self.customer).messages_sent, 2)

    def test_log_is_append_only(self):
        service = fake_service(SendResult.ok('wamid-1'))
        send_to_customer(self.customer, 'Oi', service=service)

        log = MessageLog.objects.get()
        log.status = MessageLog.STATUS_FAILED
        with self.assertRaises(ValueError):
            log.save()


class SendMessageViewTest(TestCase):

    @classmethod
    def setUpTestData(cls):
        cls.owner = User.objects.create_user(username='owner', password='testpass123')
        cls.restaurant = Restaurant.objects.create(name='Cantina', owner=cls.owner)
        cls.customer = Customer.objects.create(
            restaurant=cls.restaurant, name='Ana', phone='5511912345601'
        )

    def setUp(self):
        self.client = Client()
        self.client.force_login(self.owner)

    @patch('messaging.views.send_to_customer')
    def test_send(self, send):
        send.return_value = SendResult.ok('wamid-9')

        response = self.client.post(reverse('message_send'), {
            'customer_id': self.customer.pk, 'message': 'Seu pedido saiu!'
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'success': True, 'message_id': 'wamid-9'})
        self.assertEqual(send.call_args[0][1], 'Seu pedido saiu!')

    @patch('messaging.views.send_to_customer')
    def test_gateway_failure(self, send):
        send.return_value = SendResult.failed(ChannelTransientError('Gateway unreachable'))

        response = self.client.post(reverse('message_send'), {
            'customer_id': self.customer.pk, 'message': 'Oi'
        })

        self.assertEqual(response.status_code, 502)
        self.assertTrue(response.json()['transient'])

    def test_empty_message(self):
        response = self.client.post(reverse('message_send'), {'customer_id': self.customer.pk, 'message': ' '})
        self.assertEqual(response.status_code, 400)

    def test_other_restaurants_customer(self):
        intruder = User.objects.create_user(username='intruder', password='testpass123')
        self.client.force_login(intruder)
        response = self.client.post(reverse('message_send'), {'customer_id': self.customer.pk, 'message': 'Oi'})
        self.assertEqual(response.status_code, 404)
