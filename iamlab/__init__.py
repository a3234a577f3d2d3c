"""
iamlab - Automated setup and teardown for the Google Cloud IAM lab.

This package provides a CLI that provisions the lab's bucket, service
account, VM instance and policy bindings through the gcloud client, and
removes them again afterwards.
"""

__version__ = "0.1.0"
__author__ = "iamlab contributors"
