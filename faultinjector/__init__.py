"""
HTTP Fault Injector
===================

Interactive fault-injection proxy for exercising client resiliency code:
  • Forwards each request to its real upstream and captures the response
  • Lets the operator deliver it in full, truncated, or not at all
  • Then hangs, closes (TCP FIN), or resets (TCP RST) the client connection

Cross-platform: Linux · macOS · Windows
"""

__version__ = "1.0.0"
__app_name__ = "HTTP Fault Injector"
