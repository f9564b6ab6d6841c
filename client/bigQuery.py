import asyncio
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

from google.oauth2 import service_account
from google.cloud import bigquery


class Client:
    def __init__(self, credentials_json, project_id, dataset_id: str = 'data', client=None):
        """
        Initialize the BigQuery content store

        Reads posts and user profiles for the ranking strategies. Query errors
        propagate so the feed orchestrator can fall back or fail the request.

        Args:
            credentials_json: Service account info dict
            project_id: GCP project ID
            dataset_id: Dataset holding the posts and users tables
            client: Pre-built bigquery.Client (used by tests)
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.debug("Initializing BigQuery content store")

        self.credentials_json = credentials_json
        self.project_id = project_id
        self.dataset_id = dataset_id
        self.client = client if client is not None else self._build_client()

    def _build_client(self):
        """Build and return the BigQuery client"""
        self.logger.debug("Building BigQuery client")

        credentials = service_account.Credentials.from_service_account_info(
            self.credentials_json,
            scopes=['https://www.googleapis.com/auth/bigquery']
        )

        client = bigquery.Client(project=self.project_id, credentials=credentials)
        self.logger.debug("BigQuery client built successfully")
        return client

    def _table(self, table_id: str) -> str:
        return f"`{self.project_id}.{self.dataset_id}.{table_id}`"

    @contextmanager
    def _managed_query_job(self, query, job_config=None):
        """Context manager for query jobs; cancels jobs left running"""
        job = None
        try:
            job = self.client.query(query, job_config=job_config)
            yield job
        finally:
            if job is not None and getattr(job, 'state', None) in ['PENDING', 'RUNNING']:
                try:
                    job.cancel()
                except Exception as e:
                    self.logger.debug(f"Failed to cancel query job: {e}")

    def _run_query(self, query: str, parameters: List) -> List[Dict]:
        """Execute a parameterized query and return rows as dicts"""
        job_config = bigquery.QueryJobConfig(query_parameters=parameters, use_query_cache=True)

        with self._managed_query_job(query, job_config) as query_job:
            rows = []
            for row in query_job.result():
                row_dict = {}
                for key, value in row.items():
                    if hasattr(value, 'isoformat'):
                        row_dict[key] = value.isoformat()
                    else:
                        row_dict[key] = value
                rows.append(row_dict)

        self.logger.debug(f"Query returned {len(rows)} rows")
        return rows

    def _page_query(self, order_by: str) -> str:
        return f"""
        SELECT *
        FROM {self._table('posts')}
        WHERE is_public = TRUE
          AND (@exclude_author IS NULL OR author_id != @exclude_author)
        ORDER BY {order_by}
        LIMIT @limit OFFSET @offset
        """

    def _page_parameters(self, exclude_author: Optional[str], offset: int, limit: int) -> List:
        return [
            bigquery.ScalarQueryParameter("exclude_author", "STRING", exclude_author),
            bigquery.ScalarQueryParameter("limit", "INT64", int(limit)),
            bigquery.ScalarQueryParameter("offset", "INT64", int(offset)),
        ]

    async def get_recent_posts(self, exclude_author: Optional[str], offset: int, limit: int) -> List[Dict]:
        """
        Read public posts ordered by recency

        Args:
            exclude_author: Author whose posts are left out
            offset: Number of posts to skip
            limit: Maximum number of posts to return

        Returns:
            Newest-first list of post dicts
        """
        query = self._page_query("created_at DESC")
        parameters = self._page_parameters(exclude_author, offset, limit)
        return await asyncio.to_thread(self._run_query, query, parameters)

    async def get_top_posts(self, exclude_author: Optional[str], offset: int, limit: int) -> List[Dict]:
        """Read public posts ordered by engagement, then recency"""
        query = self._page_query(
            "(IFNULL(like_count, 0) + IFNULL(repost_count, 0) + IFNULL(reply_count, 0)) DESC, created_at DESC"
        )
        parameters = self._page_parameters(exclude_author, offset, limit)
        return await asyncio.to_thread(self._run_query, query, parameters)

    async def get_user_profile(self, user_id: str) -> Optional[Dict]:
        """
        Read a single user profile

        Returns:
            Profile dict or None if the user does not exist
        """
        query = f"""
        SELECT *
        FROM {self._table('users')}
        WHERE user_id = @user_id
        LIMIT 1
        """
        parameters = [bigquery.ScalarQueryParameter("user_id", "STRING", user_id)]
        rows = await asyncio.to_thread(self._run_query, query, parameters)
        return rows[0] if rows else None

    def close(self):
        try:
            self.client.close()
        except Exception as e:
            self.logger.debug(f"Error closing BigQuery client: {e}")
