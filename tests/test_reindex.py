"""
Unit tests for the OpenSearchReindexManager class and the reindex request helpers.

This module contains tests for building reindex-from-remote requests,
starting asynchronous reindex tasks and reading their status.
"""

import unittest
from unittest.mock import patch, MagicMock
from datetime import datetime, timezone
from reindex import (OpenSearchReindexManager, batch_size_for_attempt, build_reindex_body)

REMOTE = {'host': 'http://old-cluster:9200'}


class TestReindexRequest(unittest.TestCase):
    """Test cases for the reindex request helpers."""

    def test_batch_size_shrinks_with_attempts(self):
        """Test the batch size of the first, second and later attempts."""
        self.assertEqual(batch_size_for_attempt(0), 1000)
        self.assertEqual(batch_size_for_attempt(1), 500)
        self.assertEqual(batch_size_for_attempt(2), 250)
        self.assertEqual(batch_size_for_attempt(7), 250)

    def test_body_without_date_field(self):
        """Test a type-filtered request sorted by id."""
        body = build_reindex_body(REMOTE, 'organizations-v1', 'project', 'projects-v1', 1000)

        self.assertEqual(body['conflicts'], 'proceed')
        self.assertEqual(body['dest'], {'index': 'projects-v1'})
        source = body['source']
        self.assertEqual(source['remote'], REMOTE)
        self.assertEqual(source['index'], 'organizations-v1')
        self.assertEqual(source['size'], 1000)
        self.assertEqual(source['query'], {'bool': {'filter': [{'term': {'_type': 'project'}}]}})
        self.assertEqual(source['sort'], [{'id': 'asc'}])

    def test_body_with_date_field(self):
        """Test a request restricted to documents after the cutoff and sorted by date."""
        cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)

        body = build_reindex_body(REMOTE, 'events-v1-2024.03.01', 'events', 'events-v1-2024.03.01',
                                  250, date_field='updated_utc', cutoff_date=cutoff)

        filters = body['source']['query']['bool']['filter']
        self.assertEqual(filters[0], {'term': {'_type': 'events'}})
        self.assertEqual(filters[1], {'range': {'updated_utc': {'gte': '2024-01-01T00:00:00+00:00'}}})
        self.assertEqual(body['source']['sort'], [{'updated_utc': 'asc'}])
        self.assertEqual(body['source']['size'], 250)


class TestOpenSearchReindexManager(unittest.TestCase):
    """Test cases for the OpenSearchReindexManager class."""

    def setUp(self):
        """Set up test environment."""
        self.env_patcher = patch.dict('os.environ', {
            'OPENSEARCH_ENDPOINT': 'test-endpoint.com',
            'AWS_REGION': 'us-east-1'
        })
        self.session_patcher = patch('boto3.Session')
        self.requests_patcher = patch('requests.get', return_value=MagicMock(status_code=200))

        self.env_patcher.start()
        mock_session = self.session_patcher.start()
        mock_session.return_value.get_credentials.return_value = MagicMock(
            access_key='test-access-key', secret_key='test-secret-key', token='test-token'
        )
        self.requests_patcher.start()

        self.reindex_manager = OpenSearchReindexManager()
        self.reindex_manager._make_request = MagicMock()

    def tearDown(self):
        """Clean up after tests."""
        self.env_patcher.stop()
        self.session_patcher.stop()
        self.requests_patcher.stop()

    def _response(self, body):
        response = MagicMock(status_code=200)
        response.json.return_value = body
        return {'status': 'success', 'response': response}

    def test_start_reindex_success(self):
        """Test that starting a reindex returns the task id."""
        self.reindex_manager._make_request.return_value = self._response({'task': 'node-1:42'})
        body = build_reindex_body(REMOTE, 'stacks-v1', 'stacks', 'stacks-v1', 1000)

        result = self.reindex_manager.start_reindex(body)

        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['task_id'], 'node-1:42')
        self.reindex_manager._make_request.assert_called_once_with(
            'POST', '/_reindex?wait_for_completion=false', data=body, max_retries=1
        )

    def test_start_reindex_request_error(self):
        """Test a reindex request rejected by the cluster."""
        self.reindex_manager._make_request.return_value = {
            'status': 'error',
            'message': 'Remote host not whitelisted',
            'status_code': 400
        }

        result = self.reindex_manager.start_reindex({})

        self.assertEqual(result['status'], 'error')
        self.assertEqual(result['message'], 'Failed to start reindex: Remote host not whitelisted')
        self.assertEqual(result['status_code'], 400)

    def test_start_reindex_without_task_id(self):
        """Test a response that does not contain a task id."""
        self.reindex_manager._make_request.return_value = self._response({'took': 10})

        result = self.reindex_manager.start_reindex({})

        self.assertEqual(result['status'], 'error')
        self.assertEqual(result['message'], 'Reindex response did not contain a task id')

    def test_get_task_status_running(self):
        """Test reading the status of a running task."""
        self.reindex_manager._make_request.return_value = self._response({
            'completed': False,
            'task': {
                'status': {'total': 200, 'created': 50, 'updated': 0, 'deleted': 0, 'version_conflicts': 0},
                'running_time_in_nanos': 3_000_000_000
            }
        })

        result = self.reindex_manager.get_task_status('node-1:42')

        self.assertEqual(result['status'], 'success')
        task_status = result['task_status']
        self.assertFalse(task_status.completed)
        self.assertTrue(task_status.valid)
        self.assertEqual(task_status.progress, 0.25)
        self.reindex_manager._make_request.assert_called_once_with(
            'GET', '/_tasks/node-1:42?wait_for_completion=false', max_retries=1
        )

    def test_get_task_status_completed_with_error(self):
        """Test that a task that ended with an error is reported as invalid."""
        self.reindex_manager._make_request.return_value = self._response({
            'completed': True,
            'task': {'status': {'total': 10, 'created': 3}},
            'error': {'type': 'connect_exception', 'reason': 'Connection refused'}
        })

        task_status = self.reindex_manager.get_task_status('node-1:42')['task_status']

        self.assertTrue(task_status.completed)
        self.assertFalse(task_status.valid)
        self.assertEqual(task_status.error, 'Connection refused')

    def test_get_task_status_rate_limited(self):
        """Test that a 429 response is flagged as rate limited."""
        self.reindex_manager._make_request.return_value = {
            'status': 'error',
            'message': 'Too Many Requests',
            'status_code': 429
        }

        result = self.reindex_manager.get_task_status('node-1:42')

        self.assertEqual(result['status'], 'error')
        self.assertTrue(result['rate_limited'])

    def test_get_task_status_without_status(self):
        """Test a task response without a status block."""
        self.reindex_manager._make_request.return_value = self._response({'completed': False, 'task': {}})

        result = self.reindex_manager.get_task_status('node-1:42')

        self.assertEqual(result['status'], 'error')
        self.assertEqual(result['message'], 'Task node-1:42 returned no status')

    def test_cancel_task(self):
        """Test cancelling an abandoned task with a single request."""
        self.reindex_manager._make_request.return_value = {'status': 'success', 'response': MagicMock(status_code=200)}

        result = self.reindex_manager.cancel_task('node-1:42')

        self.assertEqual(result['status'], 'success')
        self.reindex_manager._make_request.assert_called_once_with('POST', '/_tasks/node-1:42/_cancel', max_retries=1)

    def test_cancel_task_error(self):
        """Test that a failed cancel request is reported."""
        self.reindex_manager._make_request.return_value = {'status': 'error', 'message': 'Not Found'}

        result = self.reindex_manager.cancel_task('node-1:42')

        self.assertEqual(result['status'], 'error')
        self.assertEqual(result['message'], 'Failed to cancel task node-1:42: Not Found')

    def test_count(self):
        """Test counting the documents of a target index."""
        self.reindex_manager._make_request.return_value = self._response({'count': 1234})

        self.assertEqual(self.reindex_manager.count('stacks-v1'), 1234)
        self.reindex_manager._make_request.assert_called_once_with('GET', '/stacks-v1/_count')

if __name__ == '__main__':
    unittest.main()
