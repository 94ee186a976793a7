import logging

import requests

logger = logging.getLogger("KioskApiClient")


class KioskApiClient:
    """Blocking upstream client used for connectivity probes."""

    def __init__(self, probe_url, kiosk_id, timeout=5, ssl_verify=True):
        self.probe_url = probe_url
        self.kiosk_id = kiosk_id
        self.timeout = timeout
        self.session = requests.Session()
        self.session.verify = ssl_verify
        self.session.headers.update({
            'X-Kiosk-ID': self.kiosk_id,
            'Accept': 'application/json'
        })

    def check_connection(self):
        """
        HEAD the probe URL. Any HTTP answer below 500 means the upstream is
        reachable; the browser's online flag alone is not trusted.
        """
        try:
            response = self.session.head(
                self.probe_url,
                timeout=self.timeout,
                allow_redirects=True,
                headers={'Cache-Control': 'no-cache'}
            )
            return response.status_code < 500
        except requests.exceptions.RequestException as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def close(self):
        self.session.close()
