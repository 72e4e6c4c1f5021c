"""
test_network.py - Unit Tests for the HTTP Transport

urlopen is patched; nothing leaves the machine.
"""

import os
import socket
import sys
import unittest
import urllib.error
from unittest import mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from ebics_types import EbicsErrorCode
from network import CONTENT_TYPE, make_transport, post_request

URL = "https://ebics.bank.test/ebicsweb"


def _response(body: bytes):
    response = mock.MagicMock()
    response.__enter__.return_value.read.return_value = body
    return response


class TestPostRequest(unittest.TestCase):

    @mock.patch("network.urllib.request.urlopen")
    def test_success(self, urlopen):
        urlopen.return_value = _response("<ebicsResponse>ü</ebicsResponse>".encode('utf-8'))
        err, body = post_request(URL, b"<ebicsRequest/>", timeout_sec=5)

        self.assertEqual(err, EbicsErrorCode.SUCCESS)
        self.assertEqual(body, "<ebicsResponse>ü</ebicsResponse>")

        request = urlopen.call_args[0][0]
        self.assertEqual(request.full_url, URL)
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.data, b"<ebicsRequest/>")
        self.assertEqual(request.get_header("Content-type"), CONTENT_TYPE)
        self.assertEqual(urlopen.call_args[1]["timeout"], 5)

        print("test_success: PASSED")

    @mock.patch("network.urllib.request.urlopen")
    def test_http_error(self, urlopen):
        urlopen.side_effect = urllib.error.HTTPError(URL, 500, "Internal Server Error", {}, None)
        err, message = post_request(URL, b"<x/>")
        self.assertEqual(err, EbicsErrorCode.ERR_TRANSPORT)
        self.assertEqual(message, "HTTP 500 Internal Server Error")

    @mock.patch("network.urllib.request.urlopen")
    def test_unreachable_host(self, urlopen):
        urlopen.side_effect = urllib.error.URLError("connection refused")
        err, message = post_request(URL, b"<x/>")
        self.assertEqual(err, EbicsErrorCode.ERR_TRANSPORT)
        self.assertIn("connection refused", message)

    @mock.patch("network.urllib.request.urlopen")
    def test_timeout(self, urlopen):
        urlopen.side_effect = socket.timeout("timed out")
        err, message = post_request(URL, b"<x/>", timeout_sec=3)
        self.assertEqual(err, EbicsErrorCode.ERR_TRANSPORT)
        self.assertEqual(message, "timeout after 3s")

    @mock.patch("network.urllib.request.urlopen")
    def test_undecodable_body(self, urlopen):
        urlopen.return_value = _response(b"\xff\xfe\xfa")
        err, _ = post_request(URL, b"<x/>")
        self.assertEqual(err, EbicsErrorCode.ERR_TRANSPORT)


class TestMakeTransport(unittest.TestCase):

    @mock.patch("network.post_request", return_value=(EbicsErrorCode.SUCCESS, "<ok/>"))
    def test_binds_url_and_timeout(self, post):
        transport = make_transport(URL, 12)
        self.assertEqual(transport(b"<x/>"), (EbicsErrorCode.SUCCESS, "<ok/>"))
        post.assert_called_once_with(URL, b"<x/>", 12, None)


if __name__ == "__main__":
    unittest.main()
