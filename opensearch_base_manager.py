"""
OpenSearch Base Manager

This module provides the shared connection layer for the migration job:
AWS IAM authentication, request retries, logging setup and the small set of
index helpers (existence, document count, index creation) the job relies on.
"""

import requests
import logging
import os
import time
from typing import Dict, Any, Optional
from dotenv import load_dotenv
import urllib3
import boto3
from datetime import datetime
from requests_aws4auth import AWS4Auth

# Load environment variables
load_dotenv()

# Constants
ALIASES_ENDPOINT = '/_aliases'
INDEX_NOT_EXIST_MESSAGE = 'Index does not exist'
INDEX_ALREADY_EXISTS_ERROR = 'resource_already_exists_exception'

logger = logging.getLogger(__name__)

# Disable SSL verification warnings
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

class OpenSearchException(Exception):
    """Custom exception for OpenSearch operations."""
    pass

class OpenSearchBaseManager:
    """
    Base class for OpenSearch operations with support for AWS IAM authentication.
    """

    CONTENT_TYPE_JSON = 'application/json'
    MAX_RETRIES = 3

    def __init__(self, opensearch_endpoint: Optional[str] = None):
        """
        Initialize the OpenSearch base manager.

        Args:
            opensearch_endpoint (str, optional): The OpenSearch cluster endpoint URL

        Raises:
            ValueError: If OpenSearch endpoint is not provided
            OpenSearchException: If connection to OpenSearch fails after maximum retries
        """
        self.opensearch_endpoint = opensearch_endpoint or os.getenv('OPENSEARCH_ENDPOINT')
        self.verify_ssl = os.getenv('VERIFY_SSL', 'false').lower() == 'true'

        if not self.opensearch_endpoint:
            raise ValueError("OpenSearch endpoint is required")

        # Remove https:// prefix if present
        self.opensearch_endpoint = self.opensearch_endpoint.replace('https://', '')
        self.aws_region = os.getenv('AWS_REGION', 'us-east-1')

        logger.info(f"Initializing OpenSearch connection with endpoint: {self.opensearch_endpoint}")
        logger.info(f"Using AWS region: {self.aws_region}, SSL verification: {self.verify_ssl}")

        self.session = boto3.Session()
        self.credentials = self.session.get_credentials()
        self.auth = AWS4Auth(
            self.credentials.access_key,
            self.credentials.secret_key,
            self.aws_region,
            'es',
            session_token=self.credentials.token
        )

        self._setup_logging()
        self._test_connection()

    def _test_connection(self) -> Dict[str, Any]:
        """
        Test the connection to OpenSearch with retry logic.

        Returns:
            Dict[str, Any]: Response with status and message

        Raises:
            OpenSearchException: If connection to OpenSearch fails after maximum retries
        """
        for attempt in range(1, self.MAX_RETRIES + 1):
            try:
                logger.info(f"Testing connection to OpenSearch (Attempt {attempt}/{self.MAX_RETRIES})")
                response = requests.get(
                    f"https://{self.opensearch_endpoint}",
                    auth=self.auth,
                    verify=self.verify_ssl,
                    timeout=10
                )
                response.raise_for_status()
                logger.info("Successfully connected to OpenSearch")
                return {
                    'status': 'success',
                    'message': 'Successfully connected to OpenSearch'
                }
            except requests.exceptions.RequestException as e:
                self._log_request_error(e, attempt, self.MAX_RETRIES)
                if attempt == self.MAX_RETRIES:
                    logger.error(f"Failed to connect to OpenSearch after {self.MAX_RETRIES} attempts. Giving up.")
                    raise OpenSearchException(f"Failed to connect to OpenSearch after {self.MAX_RETRIES} attempts: {str(e)}")
                self._backoff(attempt)

    def _make_request(self, method: str, path: str, data: Optional[Any] = None,
                      headers: Optional[Dict[str, str]] = None, max_retries: Optional[int] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to OpenSearch with AWS IAM authentication.

        Transport errors and error responses are retried with exponential
        backoff. The error result carries the HTTP status code of the last
        response when the backend answered.

        Args:
            method (str): HTTP method (GET, POST, etc.)
            path (str): API path including any query string
            data (dict or str, optional): Request body
            headers (dict, optional): Additional headers to include
            max_retries (int, optional): Attempts before giving up, defaults to MAX_RETRIES

        Returns:
            Dict[str, Any]: Response with status and message
        """
        url = f"https://{self.opensearch_endpoint}{path}"
        request_headers = self._prepare_headers(headers)
        max_retries = max_retries or self.MAX_RETRIES

        for attempt in range(1, max_retries + 1):
            try:
                logger.debug(f"Making request to OpenSearch: {method} {url} (Attempt {attempt}/{max_retries})")
                response = self._execute_request(method, url, request_headers, data)
                response.raise_for_status()
                return {
                    'status': 'success',
                    'message': 'Request completed successfully',
                    'response': response
                }
            except requests.exceptions.RequestException as e:
                self._log_request_error(e, attempt, max_retries)
                status_code = getattr(getattr(e, 'response', None), 'status_code', None)
                # A missing index will not appear on retry
                if status_code == 404:
                    return {
                        'status': 'error',
                        'message': INDEX_NOT_EXIST_MESSAGE,
                        'status_code': status_code
                    }
                if attempt == max_retries:
                    logger.error(f"Failed to make request to OpenSearch after {max_retries} attempts. Giving up.")
                    return {
                        'status': 'error',
                        'message': f"Failed to make request to OpenSearch after {max_retries} attempts: {str(e)}",
                        'status_code': status_code,
                        'response': getattr(e, 'response', None)
                    }
                self._backoff(attempt)

    def _backoff(self, attempt: int):
        """Sleep 1s, 2s, 4s... between attempts."""
        wait_time = 2 ** (attempt - 1)
        logger.info(f"Retrying in {wait_time} seconds...")
        time.sleep(wait_time)

    def _prepare_headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Prepare request headers."""
        request_headers = {
            'Content-Type': self.CONTENT_TYPE_JSON,
            'Accept': self.CONTENT_TYPE_JSON
        }
        if headers:
            request_headers.update(headers)
        return request_headers

    def _execute_request(self, method: str, url: str, headers: Dict[str, str], data: Optional[Any] = None) -> requests.Response:
        """Execute the HTTP request."""
        kwargs = {
            'method': method,
            'url': url,
            'headers': headers,
            'auth': self.auth,
            'verify': self.verify_ssl
        }
        if isinstance(data, dict):
            kwargs['json'] = data
        elif data is not None:
            kwargs['data'] = data
        return requests.request(**kwargs)

    def _log_request_error(self, exception, retry_count, max_retries):
        """Log request error details."""
        logger.error(f"Error making request to OpenSearch (Attempt {retry_count}/{max_retries}): {str(exception)}")

        response = getattr(exception, 'response', None)
        if response is not None and hasattr(response, 'text'):
            logger.error(f"Response text: {response.text}")

    def _setup_logging(self):
        """Set up logging to both a dated file under log/ and the console."""
        log_dir = 'log'
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)

        timestamp = datetime.now().strftime('%Y%m%d')
        log_file = os.path.join(log_dir, f'data_migration_{timestamp}.log')
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[
                logging.FileHandler(log_file),
                logging.StreamHandler()
            ]
        )
        logger.info("Logging initialized")

    def _verify_index_exists(self, index_name: str) -> bool:
        """
        Verify that an index exists.

        Args:
            index_name (str): Name of the index

        Returns:
            bool: True if the index exists, False otherwise
        """
        result = self._make_request('HEAD', f'/{index_name}')
        if result['status'] == 'error':
            if result['message'] == INDEX_NOT_EXIST_MESSAGE:
                logger.warning(f"Index {index_name} does not exist")
            else:
                logger.error(f"Error verifying index exists: {result['message']}")
            return False
        return True

    def _get_index_count(self, index_name: str) -> int:
        """
        Get the document count for an index.

        Args:
            index_name (str): Name of the index

        Returns:
            int: Document count, 0 when the index is missing or the request fails
        """
        try:
            result = self._make_request('GET', f'/{index_name}/_count')
            if result['status'] == 'error':
                if result['message'] == INDEX_NOT_EXIST_MESSAGE:
                    logger.warning(f"Index {index_name} does not exist")
                else:
                    logger.error(f"Error getting index count: {result['message']}")
                return 0
            return result['response'].json().get('count', 0)
        except ValueError as e:
            logger.error(f"Error getting index count: {str(e)}")
            return 0

    def create_index(self, index_name: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create an index in OpenSearch.

        An index that already exists is reported with a warning status so
        callers can treat creation as idempotent.

        Args:
            index_name (str): Name of the index
            body (Dict[str, Any], optional): Index settings, mappings and aliases

        Returns:
            Dict[str, Any]: Result containing status and details
        """
        result = self._make_request('PUT', f'/{index_name}', data=body or {}, max_retries=1)
        if result['status'] == 'success':
            return {
                'status': 'success',
                'message': f"Index {index_name} created successfully"
            }

        response = result.get('response')
        if result.get('status_code') == 400 and response is not None:
            try:
                error = response.json().get('error', {})
            except ValueError:
                error = {}
            if error.get('type') == INDEX_ALREADY_EXISTS_ERROR:
                return {
                    'status': 'warning',
                    'message': f"Index {index_name} already exists"
                }
        return {
            'status': 'error',
            'message': f"Failed to create index {index_name}: {result['message']}"
        }
