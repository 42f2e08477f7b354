"""Face Archive Refresher - asks the archive builder to re-zip a section's enrollment photos"""
import logging

import requests

logger = logging.getLogger(__name__)


class FaceArchiveRefresher:
    def __init__(self, url=None, token=None, timeout=10):
        self.url = url or None
        self.token = token or None
        self.timeout = timeout

        if not self.url:
            logger.info("Face archive refresh URL not configured - refresh requests are skipped")

    @property
    def enabled(self):
        return self.url is not None

    def request_refresh(self, section_id):
        """Trigger a rebuild of ``<section>/faces.zip``; returns True if it was accepted"""
        if not self.enabled:
            return False

        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"

        try:
            response = requests.post(
                self.url,
                json={'sectionId': str(section_id)},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            logger.info(f"Face archive refresh requested for section {section_id}")
            return True
        except requests.RequestException as e:
            logger.warning(f"Face archive refresh for section {section_id} failed: {e}")
            return False
