# Copyright 2019 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging

import pytest
import tfscenario

_LOGGER = logging.getLogger('tfscenario')


def pytest_addoption(parser: pytest.Parser) -> None:
  group = parser.getgroup('tfscenario')
  group.addoption('--tf-binary', default=None,
                  help='Terraform binary name or path (default: terraform)')
  group.addoption('--tf-allow-warnings', action='store_true', default=False,
                  help='do not fail dry runs on validation warnings')
  group.addoption('--tf-timeout', type=float, default=None,
                  help='timeout in seconds for validate and plan decoding')
  parser.addini('tf_binary', 'Terraform binary name or path',
                default='terraform')


class PytestReporter(tfscenario.Reporter):
  "Reporter failing the current pytest item."

  def fail(self, msg):
    _LOGGER.error(msg)
    pytest.fail(msg, pytrace=False)


@pytest.fixture(scope="session")
def terraform_binary(request: pytest.FixtureRequest) -> str:
  """Absolute path of the Terraform binary, exits the session if missing."""
  binary = (request.config.getoption('--tf-binary') or
            request.config.getini('tf_binary'))
  path = tfscenario.find_terraform(binary)
  if path is None:
    pytest.exit('lookup terraform binary: executable file "{}" not found in '
                '$PATH'.format(binary), returncode=1)
  return path


@pytest.fixture
def tf_reporter() -> PytestReporter:
  return PytestReporter()


@pytest.fixture
def dry_scenario(terraform_binary: str, tf_reporter: PytestReporter,
                 request: pytest.FixtureRequest) -> tfscenario.DryScenario:
  """Returns a DryScenario configured from command line options"""
  return tfscenario.DryScenario(
      binary=terraform_binary, reporter=tf_reporter,
      strict_warnings=not request.config.getoption('--tf-allow-warnings'),
      timeout=request.config.getoption('--tf-timeout'))


@pytest.fixture
def unit_scenario(terraform_binary: str,
                  tf_reporter: PytestReporter) -> tfscenario.UnitScenario:
  """Returns a UnitScenario bound to the located binary"""
  return tfscenario.UnitScenario(binary=terraform_binary, reporter=tf_reporter)


@pytest.fixture
def integration_scenario(
    terraform_binary: str,
    tf_reporter: PytestReporter) -> tfscenario.IntegrationScenario:
  """Returns an IntegrationScenario bound to the located binary"""
  return tfscenario.IntegrationScenario(binary=terraform_binary,
                                        reporter=tf_reporter)
