"""Navigator Env Meta information.
   Navigator Env keeps team secrets in an encrypted, git-friendly vault.
"""
__title__ = 'navigator_env'
__description__ = (
   'Navigator Env keeps team secrets in an encrypted, '
   'git-friendly vault with a tamper-evident audit log.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-env'
