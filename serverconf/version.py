"""ServerConf Meta information.
   ServerConf keeps server provisioning secrets encrypted at rest and
   merges them with public settings at point of use.
"""
__title__ = 'serverconf'
__description__ = (
   'Encrypted configuration core for server provisioning: age identities, '
   'sops policy files and merged settings.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2024 ServerConf Authors'
__author__ = 'ServerConf Authors'
__license__ = 'Apache-2.0'
