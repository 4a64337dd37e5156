"""mailer/ -- Outbound transactional email (welcome, password reset code).

Layer rule: mailer/ may import from auth/ and core/. auth/ never imports
mailer/ -- services receive an EmailDispatcher instance at construction.
"""
