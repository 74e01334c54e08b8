"""
Daily notification emails.

Jobs here:
  - account_expiry_notice_daily.py
      • per-approver table of directory accounts about to expire
"""
